"""Exchange Online admin client (mutation target)."""

from .client import ExchangeClient, ExchangeCommandError

__all__ = ["ExchangeClient", "ExchangeCommandError"]
