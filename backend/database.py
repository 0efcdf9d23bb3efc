from dotenv import load_dotenv
load_dotenv()

import logging
import os
from datetime import datetime
from typing import List, Optional

from bson.errors import InvalidId
from bson.objectid import ObjectId
from pymongo import DESCENDING, MongoClient
from pymongo.errors import PyMongoError

logger = logging.getLogger(__name__)

SIGNED_PREFIX = "User (signed): "
GENERATED_PREFIX = "AI (generated): "
SPOKEN_PREFIX = "Other Person (spoke): "


def signed_line(text: str) -> str:
    return SIGNED_PREFIX + text


def generated_line(text: str) -> str:
    return GENERATED_PREFIX + text


def spoken_line(text: str) -> str:
    return SPOKEN_PREFIX + text


def _object_id(chat_id) -> Optional[ObjectId]:
    try:
        return ObjectId(chat_id)
    except (InvalidId, TypeError):
        return None


class DatabaseManager:
    """Conversation history store, one document per chat."""

    def __init__(self, mongodb_uri: Optional[str] = None, db_name: Optional[str] = None):
        self.mongodb_uri = mongodb_uri or os.getenv("MONGODB_URI", "mongodb://localhost:27017/")
        self.db_name = db_name or os.getenv("MONGODB_DB", "signbridge")
        self.client = None
        self.db = None
        self.chats = None

    def connect(self, client=None) -> bool:
        uri = self.mongodb_uri
        logger.info("Attempting to connect to MongoDB with URI: %s", uri.split("@")[-1])

        try:
            if client is None:
                connection_options = {
                    "serverSelectionTimeoutMS": 30000,
                    "connectTimeoutMS": 30000,
                    "socketTimeoutMS": 30000,
                    "retryWrites": True,
                    "w": "majority",
                }
                # Atlas clusters require TLS, a local server does not
                if uri.startswith("mongodb+srv://"):
                    connection_options["tls"] = True
                client = MongoClient(uri, **connection_options)

            client.admin.command("ping")
            self.client = client
            self.db = client[self.db_name]
            self.chats = self.db["chats"]
            self.chats.create_index([("createdAt", DESCENDING)])
            logger.info("✅ MongoDB connection established, using database: %s", self.db_name)
            return True
        except PyMongoError as e:
            logger.error("❌ MongoDB connection failed: %s", e)
            self.client = None
            self.db = None
            self.chats = None
            return False

    def is_connected(self) -> bool:
        """Check if the database is connected"""
        if self.client is None:
            return False
        try:
            self.client.admin.command("ping")
            return True
        except PyMongoError:
            return False

    def create_chat(self) -> str:
        result = self.chats.insert_one({"history": [], "createdAt": datetime.now()})
        logger.info("✅ Chat created with ID: %s", result.inserted_id)
        return str(result.inserted_id)

    def append_history(self, chat_id: str, lines: List[str]) -> bool:
        """Append conversation turns; False if the chat does not exist."""
        oid = _object_id(chat_id)
        if oid is None:
            return False
        result = self.chats.update_one(
            {"_id": oid},
            {"$push": {"history": {"$each": list(lines)}}},
        )
        if result.matched_count == 0:
            logger.warning("⚠️ Chat not found with ID: %s", chat_id)
            return False
        return True

    def get_history(self, chat_id: str) -> Optional[List[str]]:
        oid = _object_id(chat_id)
        if oid is None:
            return None
        chat = self.chats.find_one({"_id": oid})
        if chat is None:
            return None
        return list(chat.get("history", []))

    def list_chats(self, limit: int = 50) -> List[dict]:
        chats = self.chats.find().sort("createdAt", DESCENDING).limit(limit)
        return [
            {
                "chatId": str(c["_id"]),
                "createdAt": c.get("createdAt"),
                "turns": len(c.get("history", [])),
            }
            for c in chats
        ]

    def delete_chat(self, chat_id: str) -> bool:
        oid = _object_id(chat_id)
        if oid is None:
            return False
        result = self.chats.delete_one({"_id": oid})
        if result.deleted_count:
            logger.info("🗑️ Deleted chat %s", chat_id)
        return result.deleted_count > 0


# Singleton instance, connected on application startup
db_manager = DatabaseManager()
