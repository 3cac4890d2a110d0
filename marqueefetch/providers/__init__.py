from .arcadeitalia import ArcadeItaliaProvider
from .base import BaseProvider
from .screenscraper import ScreenScraperProvider

__all__ = [
    "ArcadeItaliaProvider",
    "BaseProvider",
    "ScreenScraperProvider",
]
