"""DevTools Protocol channel and page access."""

from .connector import ChromeConnector, ChromeConnectionError
from .page import PageHandle

__all__ = [
    'ChromeConnector',
    'ChromeConnectionError',
    'PageHandle',
]
