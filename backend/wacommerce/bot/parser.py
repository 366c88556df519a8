# wacommerce/bot/parser.py

import re
from typing import List, Literal, Optional

from pydantic import BaseModel, Field

from wacommerce.bot.intents import IntentMatcher


class ParsedCommand(BaseModel):
    command: str
    args: List[str] = Field(default_factory=list)


class Classification(BaseModel):
    """Derived classification of one chat line."""
    kind: Literal["command", "intent"]
    command: Optional[ParsedCommand] = None
    intent: Optional[str] = None


class CommandParser:
    """Classifies chat text as a `!command` or a natural-language intent."""

    def __init__(self, prefix: str = "!", intents: Optional[IntentMatcher] = None):
        self.prefix = prefix
        self.intents = intents or IntentMatcher()
        self._command_regex = re.compile(rf"{re.escape(prefix)}([A-Za-z0-9_]+)(?:\s+(.*))?")

    def is_command(self, message: str) -> bool:
        return message.startswith(self.prefix)

    def parse_command(self, message: str) -> Optional[ParsedCommand]:
        match = self._command_regex.fullmatch(message)
        if not match:
            return None
        return ParsedCommand(command=match.group(1).lower(), args=(match.group(2) or "").split())

    def detect_intent(self, message: str) -> Optional[str]:
        return self.intents.detect(message)

    def is_valid_natural_language(self, message: str) -> bool:
        return len(message) > 2 and self.detect_intent(message) is not None

    def classify(self, message: str) -> Optional[Classification]:
        # Commands never reach intent detection
        if self.is_command(message):
            parsed = self.parse_command(message)
            return Classification(kind="command", command=parsed) if parsed else None
        if not self.is_valid_natural_language(message):
            return None
        return Classification(kind="intent", intent=self.detect_intent(message))
