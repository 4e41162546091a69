"""Database models for the Central KPI platform"""

from app.models.client import Client, ClientStatus

__all__ = ["Client", "ClientStatus"]
