"""Task API connectors"""

from app.connectors.clickup import ClickUpAPIError, ClickUpConnector

__all__ = [
    "ClickUpAPIError",
    "ClickUpConnector",
]
