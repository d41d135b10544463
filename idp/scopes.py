import logging
from typing import Dict, Iterable, Optional, Tuple

from authlib.oauth2.rfc6749.util import list_to_scope, scope_to_list
from sqlalchemy.orm import Session

from .models import Scope

logger = logging.getLogger(__name__)


def parse_scope(scope) -> frozenset:
    """Turns a space separated scope string (or a list of them) into a set."""
    if isinstance(scope, (list, tuple, set, frozenset)):
        names = []
        for item in scope:
            names.extend(scope_to_list(item) or [])
    else:
        names = scope_to_list(scope) or []
    return frozenset(n for n in names if n)


def format_scope(scope: Iterable[str]) -> str:
    """Space joined, sorted so responses are deterministic."""
    return list_to_scope(sorted(scope)) or ""


class ScopeCatalog:
    """The global set of valid scopes and their descriptions."""

    def __init__(self, db: Session):
        self.db = db

    def _lookup(self, scope: Iterable[str]):
        names = list(scope)
        if not names:
            return []
        return self.db.query(Scope).filter(Scope.name.in_(names)).all()

    def validate(self, scope: Iterable[str]) -> bool:
        """True iff scope is non-empty and every element is known."""
        requested = frozenset(scope)
        if not requested:
            return False
        known = {s.name for s in self._lookup(requested)}
        return known >= requested

    def describe(self, scope: Iterable[str]) -> Tuple[Dict[str, str], bool]:
        """Descriptions of all known elements, and whether none were unknown."""
        requested = frozenset(scope)
        if not requested:
            return {}, False
        described = {s.name: s.description for s in self._lookup(requested)}
        return described, set(described) >= requested

    def get(self, name: str) -> Optional[Scope]:
        return self.db.query(Scope).filter(Scope.name == name).first()

    def add(self, name: str, description: str = "") -> Scope:
        """Adds an entry. Existing entries are left untouched."""
        existing = self.get(name)
        if existing:
            return existing
        scope = Scope(name=name, description=description)
        self.db.add(scope)
        self.db.flush()
        logger.info("[SCOPE] Added catalog entry %s", name)
        return scope

    def list(self):
        return self.db.query(Scope).order_by(Scope.name).all()
