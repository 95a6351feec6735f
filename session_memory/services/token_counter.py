"""Token counter for precise token counting."""

from typing import Iterable, Protocol

import tiktoken

from ..models.message import Message


class Counter(Protocol):
    def count_text(self, text: str) -> int:
        ...

    def count_messages(self, messages: Iterable[Message]) -> int:
        ...


class TokenCounter:
    """Precise token counter using tiktoken."""

    MESSAGE_OVERHEAD = 4

    def __init__(self, encoding_name: str = "cl100k_base"):
        """Initialize token counter.

        Args:
            encoding_name: The encoding to use (default: cl100k_base)
        """
        self.encoding = tiktoken.get_encoding(encoding_name)

    def count_text(self, text: str) -> int:
        """Count tokens in a text string.

        Args:
            text: Text to count

        Returns:
            Token count
        """
        if not text:
            return 0
        return len(self.encoding.encode(text))

    def count_messages(self, messages: Iterable[Message]) -> int:
        """Count tokens in a message sequence, including per-message overhead.

        Args:
            messages: Messages to count

        Returns:
            Total token count (0 for no messages)
        """
        total = 0
        for message in messages:
            total += self.MESSAGE_OVERHEAD
            total += self.count_text(message.text_content)
            total += self.count_text(message.role)
        return total


# Global instance
_token_counter: TokenCounter | None = None


def get_token_counter() -> TokenCounter:
    """Get or create the global token counter (loads the encoding on first use)."""
    global _token_counter
    if _token_counter is None:
        _token_counter = TokenCounter()
    return _token_counter
