"""
Client registry and the trust-on-first-use approval cache.

Registry methods:
- Client: register, get, get_by_name, list, update, delete, authenticate
- ClientApproval: get, approve (merge), covers, list
"""

import logging
import secrets
from typing import Callable, Dict, Iterable, List, Mapping, Optional

from sqlalchemy import insert
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.orm import Session

from .database import transaction
from .errors import InvalidClient, StorageFault
from .models import Client, ClientApproval, ClientScope, new_uuid, utcnow
from .scopes import ScopeCatalog

logger = logging.getLogger(__name__)

# INSERT ... ON CONFLICT DO NOTHING per dialect
_UPSERT_INSERTS = {
    "sqlite": sqlite.insert,
    "postgresql": postgresql.insert,
}

MERGE_ATTEMPTS = 5


class ClientRegistry:
    """Durable record of registered OAuth clients."""

    def __init__(self, db: Session, catalog: ScopeCatalog = None,
                 clock: Callable = utcnow):
        self.db = db
        self.catalog = catalog or ScopeCatalog(db)
        self.clock = clock

    # ---- lookup ----

    def get(self, uuid: str) -> Optional[Client]:
        return self.db.query(Client).filter(Client.uuid == uuid).first()

    def get_by_name(self, name: str) -> Optional[Client]:
        return self.db.query(Client).filter(Client.name == name).first()

    def list(self) -> List[Client]:
        return self.db.query(Client).order_by(Client.name).all()

    def authenticate(self, name: str, secret: str) -> Client:
        """Returns the client with matching name and secret or raises InvalidClient."""
        client = self.get_by_name(name) if name else None
        if client is None or secret is None:
            raise InvalidClient()
        if not secrets.compare_digest(client.secret.encode(), secret.encode()):
            logger.warning("[CLIENT] Wrong secret for client %s", name)
            raise InvalidClient()
        return client

    # ---- create / update / delete ----

    def _set_scopes(self, client: Client, scope: Mapping[str, str]):
        for name, description in scope.items():
            self.catalog.add(name, description)
        wanted = set(scope)
        kept = [s for s in client.scopes if s.name in wanted]
        added = [ClientScope(name=name) for name in sorted(wanted - {s.name for s in kept})]
        client.scopes = kept + added

    def register(self, name: str, redirect_uris: Iterable[str],
                 scope: Mapping[str, str], secret: str = None,
                 uuid: str = None) -> Client:
        """
        Register a client together with the scope it provides.

        Args:
            name: Unique client name, used as OAuth client_id
            redirect_uris: Allowed redirect URIs
            scope: Provided scope, name to description
            secret: Client secret, generated if omitted
            uuid: Fixed uuid, generated if omitted

        Returns:
            The stored client
        """
        with transaction(self.db):
            now = self.clock()
            client = Client(
                name=name,
                secret=secret or secrets.token_urlsafe(32),
                redirect_uris=frozenset(redirect_uris),
                created_at=now,
                updated_at=now,
            )
            if uuid:
                client.uuid = uuid
            self.db.add(client)
            self._set_scopes(client, scope)
            self.db.flush()

        logger.info("[CLIENT] Registered client %s", name)
        return client

    def update(self, client: Client, secret: str = None,
               redirect_uris: Iterable[str] = None,
               scope: Mapping[str, str] = None) -> Client:
        """Replace the given attributes; all or nothing."""
        with transaction(self.db):
            if secret is not None:
                client.secret = secret
            if redirect_uris is not None:
                client.redirect_uris = frozenset(redirect_uris)
            if scope is not None:
                self._set_scopes(client, scope)
            client.updated_at = self.clock()
            self.db.flush()

        logger.info("[CLIENT] Updated client %s", client.name)
        return client

    def delete(self, client: Client):
        """Removes the client with its provided scope, approvals and credentials."""
        with transaction(self.db):
            self.db.delete(client)
        logger.info("[CLIENT] Deleted client %s", client.name)

    def init_clients(self, clients: Mapping[str, Dict]) -> List[Client]:
        """Register or update the clients from configuration."""
        result = []
        for name, conf in clients.items():
            client = self.get_by_name(name)
            if client is None:
                client = self.register(
                    name,
                    conf.get("redirect_uris", []),
                    conf.get("scope", {}),
                    secret=conf.get("secret"),
                )
            else:
                client = self.update(
                    client,
                    secret=conf.get("secret"),
                    redirect_uris=conf.get("redirect_uris", []),
                    scope=conf.get("scope", {}),
                )
            result.append(client)
        return result

    # ---- approvals ----

    def get_approval(self, client_uuid: str, account_uuid: str) -> Optional[ClientApproval]:
        return (
            self.db.query(ClientApproval)
            .filter(
                ClientApproval.client_uuid == client_uuid,
                ClientApproval.account_uuid == account_uuid,
            )
            .first()
        )

    def list_approvals(self) -> List[ClientApproval]:
        return self.db.query(ClientApproval).order_by(ClientApproval.created_at).all()

    def covers(self, client_uuid: str, account_uuid: str, scope: Iterable[str]) -> bool:
        """Whether the account already approved all of scope for the client."""
        requested = frozenset(scope)
        approval = self.get_approval(client_uuid, account_uuid)
        return bool(requested) and approval is not None and approval.scope >= requested

    def _approval_query(self, client_uuid: str, account_uuid: str):
        return self.db.query(ClientApproval).filter(
            ClientApproval.client_uuid == client_uuid,
            ClientApproval.account_uuid == account_uuid,
        )

    def _insert_empty_approval(self, client_uuid: str, account_uuid: str, now):
        """Creates an empty approval row; a row inserted concurrently is kept as is."""
        table = ClientApproval.__table__
        values = {
            "uuid": new_uuid(),
            "client_uuid": client_uuid,
            "account_uuid": account_uuid,
            "scope": frozenset(),
            "created_at": now,
            "updated_at": now,
        }
        dialect = self.db.get_bind().dialect.name
        if dialect in _UPSERT_INSERTS:
            stmt = _UPSERT_INSERTS[dialect](table).values(**values).on_conflict_do_nothing(
                index_elements=["client_uuid", "account_uuid"]
            )
        else:
            stmt = insert(table).values(**values)
        self.db.execute(stmt)

    def approve(self, client_uuid: str, account_uuid: str,
                scope: Iterable[str]) -> ClientApproval:
        """
        Merge scope into the stored approval, creating it if absent.

        Runs inside the caller's transaction. The merge is a compare and
        swap on the stored scope, retried when another transaction changed
        the row in between, so concurrent merges never lose scopes.
        """
        scope = frozenset(scope)
        now = self.clock()
        if self._approval_query(client_uuid, account_uuid).first() is None:
            self._insert_empty_approval(client_uuid, account_uuid, now)

        for _ in range(MERGE_ATTEMPTS):
            current = (
                self._approval_query(client_uuid, account_uuid)
                .with_entities(ClientApproval.scope)
                .scalar()
            )
            if current >= scope:
                break
            swapped = (
                self._approval_query(client_uuid, account_uuid)
                .filter(ClientApproval.scope == current)
                .update(
                    {ClientApproval.scope: current | scope, ClientApproval.updated_at: now},
                    synchronize_session=False,
                )
            )
            if swapped == 1:
                break
            logger.info("[CLIENT] Approval changed concurrently, merging again")
        else:
            logger.error("[CLIENT] Gave up merging approval after %d attempts", MERGE_ATTEMPTS)
            raise StorageFault()

        return self._approval_query(client_uuid, account_uuid).populate_existing().one()
