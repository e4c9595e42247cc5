# Overview: Authentication context for the inventory core; operators and API tokens.

"""
Operator identity.

Login screens and session persistence live outside this service. What the
core needs is narrower: every mutating operation is attributed to an
operator, and "no authenticated operator" is a precondition failure.

Tokens are 32 random bytes (hex), stored only as a SHA-256 hash.
"""

import hashlib
import secrets

from ..extensions import db
from ..errors import NotAuthenticated, StockError
from ..models import Operator


def generate_token() -> str:
    return secrets.token_hex(32)


def hash_token(token: str) -> str:
    return hashlib.sha256(token.encode('utf-8')).hexdigest()


def create_operator(username: str) -> tuple[Operator, str]:
    """
    Create an operator and return (operator, plaintext_token).

    The plaintext token is not stored anywhere.
    """
    username = (username or "").strip()
    if not username:
        raise StockError("username is required")
    if db.session.query(Operator).filter_by(username=username).first():
        raise StockError(f"operator {username!r} already exists")

    token = generate_token()
    operator = Operator(username=username, api_token_hash=hash_token(token), is_active=True)
    db.session.add(operator)
    db.session.commit()
    return operator, token


def authenticate_token(token: str | None) -> Operator | None:
    if not token:
        return None
    operator = db.session.query(Operator).filter_by(api_token_hash=hash_token(token)).first()
    if operator is None or not operator.is_active:
        return None
    return operator


def require_operator(operator_id: int | None) -> Operator:
    """Resolve the acting operator or fail with NotAuthenticated."""
    if operator_id is None:
        raise NotAuthenticated("an authenticated operator is required")
    operator = db.session.get(Operator, operator_id)
    if operator is None or not operator.is_active:
        raise NotAuthenticated("operator is unknown or inactive")
    return operator
