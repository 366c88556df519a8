# wacommerce/bot/intents.py

import re
from typing import List, Optional, Pattern, Tuple

INTENT_ORDER = "intent_order"
INTENT_BROWSE = "intent_browse"
INTENT_CHECKOUT = "intent_checkout"
INTENT_STATUS = "intent_status"
INTENT_GREET = "intent_greet"
INTENT_HELP = "intent_help"

# Evaluated top to bottom, first match wins. "show me order status" is an
# order intent, not a status one: do not reorder.
INTENT_PATTERNS: List[Tuple[Pattern[str], str]] = [
    (re.compile(r"i want|i'd like|can i get|order|buy", re.IGNORECASE), INTENT_ORDER),
    (re.compile(r"show|list|menu|what's|what do you|products", re.IGNORECASE), INTENT_BROWSE),
    (re.compile(r"checkout|pay|payment|confirm|place order", re.IGNORECASE), INTENT_CHECKOUT),
    (re.compile(r"track|status|where is|when|delivery", re.IGNORECASE), INTENT_STATUS),
    (re.compile(r"hello|hi|hey|greetings|start", re.IGNORECASE), INTENT_GREET),
    (re.compile(r"help|commands|what can|assistance", re.IGNORECASE), INTENT_HELP),
]


class IntentMatcher:
    """Maps free text to one of a fixed set of conversational intents."""

    def __init__(self, patterns: Optional[List[Tuple[Pattern[str], str]]] = None):
        self.patterns = list(patterns if patterns is not None else INTENT_PATTERNS)

    def detect(self, message: str) -> Optional[str]:
        for regex, intent in self.patterns:
            if regex.search(message):
                return intent
        return None
