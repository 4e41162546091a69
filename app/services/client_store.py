"""
Client Store

Key-lookup and partial-update access to client records. Counter fields are
incremented inside the UPDATE statement itself so two concurrent probes of
the same client can never lose an increment.
"""
from typing import Any, Dict, List, Optional

from sqlalchemy import update, desc
from sqlalchemy.orm import Session

from app.models.client import Client, ClientStatus
from app.utils.logger import log

COUNTER_FIELDS = ("success_count", "failure_count", "consecutive_failures")


class ClientNotFoundError(LookupError):
    """Raised when a client id does not resolve to a record."""

    def __init__(self, client_id: str):
        super().__init__(f"Client not found: {client_id}")
        self.client_id = client_id


class ClientStore:
    """SQLAlchemy-backed client record store."""

    def __init__(self, db: Session):
        self.db = db

    # Lookups

    def find_by_id(self, client_id: str) -> Optional[Client]:
        return self.db.get(Client, client_id)

    def get(self, client_id: str) -> Client:
        client = self.find_by_id(client_id)
        if client is None:
            raise ClientNotFoundError(client_id)
        return client

    def find_by_token(self, token: str) -> Optional[Client]:
        return self.db.query(Client).filter(Client.clickup_token == token).first()

    def find_by_slug(self, slug: str) -> Optional[Client]:
        return self.db.query(Client).filter(Client.dashboard_slug == slug).first()

    def list_all(self) -> List[Client]:
        return self.db.query(Client).order_by(desc(Client.created_at)).all()

    def list_by_predicate(self, predicate, limit: int, order_by=None) -> List[Client]:
        """
        List clients matching a SQLAlchemy boolean expression.

        Args:
            predicate: filter expression, e.g. ``Client.status == "Connected"``
            limit: maximum rows returned
            order_by: ordering clause (defaults to most recently updated first)
        """
        query = self.db.query(Client).filter(predicate)
        query = query.order_by(order_by if order_by is not None else desc(Client.updated_at))
        return query.limit(limit).all()

    # Mutations

    def create(
        self,
        name: str,
        clickup_token: str,
        dashboard_slug: str,
        **fields: Any
    ) -> Client:
        client = Client(
            name=name,
            clickup_token=clickup_token,
            dashboard_slug=dashboard_slug,
            status=ClientStatus.NOT_CONNECTED.value,
            **fields
        )
        self.db.add(client)
        try:
            self.db.commit()
        except Exception:
            self.db.rollback()
            raise
        self.db.refresh(client)
        log.info(f"Registered client {client.name} ({client.id})")
        return client

    def update_fields(
        self,
        client_id: str,
        fields: Optional[Dict[str, Any]] = None,
        increments: Optional[Dict[str, int]] = None
    ) -> Client:
        """
        Apply a partial update to one record in a single statement.

        Args:
            client_id: record id
            fields: plain column assignments (``None`` values are written as NULL)
            increments: ``{counter: n}`` applied as ``counter = counter + n``

        Returns:
            The refreshed Client
        """
        values: Dict[str, Any] = dict(fields or {})
        for name, amount in (increments or {}).items():
            if name not in COUNTER_FIELDS:
                raise ValueError(f"{name} is not an incrementable counter")
            values[name] = getattr(Client, name) + amount

        if values:
            try:
                result = self.db.execute(
                    update(Client)
                    .where(Client.id == client_id)
                    .values(**values)
                    .execution_options(synchronize_session=False)
                )
                self.db.commit()
            except Exception:
                self.db.rollback()
                raise
            if result.rowcount == 0:
                raise ClientNotFoundError(client_id)

        client = self.find_by_id(client_id)
        if client is None:
            raise ClientNotFoundError(client_id)
        self.db.refresh(client)
        return client

    def delete(self, client_id: str) -> None:
        client = self.get(client_id)
        self.db.delete(client)
        self.db.commit()
        log.info(f"Deleted client {client_id}")
