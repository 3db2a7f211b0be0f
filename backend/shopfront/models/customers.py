from __future__ import annotations

from ..extensions import db
from ..time_utils import to_utc_z


class Customer(db.Model):
    """
    Magic-link customer identity.

    Only the sha256 of the outstanding link token is stored.
    """
    __tablename__ = "customers"
    __table_args__ = {"sqlite_autoincrement": True}

    id = db.Column(db.Integer, primary_key=True)
    email = db.Column(db.String(254), nullable=False, unique=True, index=True)

    magic_link_token_hash = db.Column(db.String(64), nullable=True, index=True)
    magic_link_expires = db.Column(db.DateTime(timezone=True), nullable=True)

    is_verified = db.Column(db.Boolean, nullable=False, default=False)
    last_login = db.Column(db.DateTime(timezone=True), nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "email": self.email,
            "is_verified": self.is_verified,
            "last_login": to_utc_z(self.last_login),
            "created_at": to_utc_z(self.created_at),
        }
