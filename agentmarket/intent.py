"""
Cheap pattern-based capability detection
Runs before discovery; anything it cannot place is left to the caller
"""

import re
from typing import List, Optional, Pattern, Tuple

CONVERSATION_PATTERNS = [
    re.compile(r"^(hi|hello|hey|greetings|good (morning|afternoon|evening))\b"),
    re.compile(r"who (are you|created you|made you)"),
    re.compile(r"^(yes|no|yeah|nope|sure|okay|ok|thanks|thank you)\b"),
    re.compile(r"how (are|do) you"),
    re.compile(r"can you help"),
    re.compile(r"tell me about yourself"),
]

TASK_WORDS = re.compile(
    r"\b(search|analy[sz]e|fetch|find|get|summari[sz]e|compare|translate|scrape|detect|classify)\b"
)

CAPABILITY_PATTERNS: List[Tuple[str, Pattern]] = [
    ("sentiment-analysis", re.compile(r"\b(sentiment|positive or negative|tone of|emotion|how .* feel)\b")),
    ("text-summarization", re.compile(r"\b(summari[sz]e|summary|tl;?dr|condense|key points)\b")),
    ("image-analysis", re.compile(r"\b(image|photo|picture|screenshot)s?\b")),
    ("translation", re.compile(r"\b(translate|translation|in (spanish|french|german|japanese|chinese))\b")),
    ("news-aggregation", re.compile(r"\b(news|headlines|latest articles)\b")),
    ("web-scraping", re.compile(r"\b(scrape|scraping|crawl|extract .* from https?://)")),
]


def is_conversation(message: str) -> bool:
    """Greetings, acknowledgements and questions about the agent, with no task in them"""
    return any(p.search(message) for p in CONVERSATION_PATTERNS) and not TASK_WORDS.search(message)


def detect_capability(message: str) -> Optional[str]:
    """
    Map a free-text request to a capability tag.

    Returns:
        The first matching capability, or None for conversation and
        unrecognized requests
    """
    text = (message or "").lower().strip()
    if not text or is_conversation(text):
        return None

    for capability, pattern in CAPABILITY_PATTERNS:
        if pattern.search(text):
            return capability
    return None
