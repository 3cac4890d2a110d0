"""MarqueeFetch: background media scraping for arcade and console frontends."""

__version__ = "1.0.0"
