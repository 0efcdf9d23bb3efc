# transcript.py
from typing import List

from gestures import SPACE_TOKEN


class TranscriptBuffer:
    """Editable text built from committed signs and explicit user commands."""

    def __init__(self, space_token: str = SPACE_TOKEN):
        self.space_token = space_token
        self.committed_text = ""

    def commit_letter(self, label: str):
        if label == self.space_token:
            # gesture spaces collapse: never two in a row, never leading
            if self.committed_text and not self.committed_text.endswith(" "):
                self.committed_text += " "
            return
        self.committed_text += label

    def delete_last_character(self):
        if self.committed_text:
            self.committed_text = self.committed_text[:-1]

    def delete_last_word(self):
        if not self.committed_text:
            return
        tokens = [t for t in self.committed_text.split(" ") if t]
        if tokens:
            tokens.pop()
        text = " ".join(tokens)
        self.committed_text = text + " " if text else ""

    def add_space(self):
        self.committed_text += " "

    def clear(self):
        self.committed_text = ""

    def get_text(self, placeholder: str = "") -> str:
        return self.committed_text or placeholder

    def words(self) -> List[str]:
        return [t for t in self.committed_text.split(" ") if t]
