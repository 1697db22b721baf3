from datetime import datetime, timezone
from models.db import db


def _utcnow():
    return datetime.now(timezone.utc)


class User(db.Model):
    __tablename__ = "users"

    id = db.Column(db.Integer, primary_key=True)

    email = db.Column(db.String(255), unique=True, nullable=False, index=True)
    username = db.Column(db.String(20), nullable=True)
    # null for accounts created through a social provider
    password_hash = db.Column(db.String(255), nullable=True)
    provider = db.Column(db.String(20), default="local", nullable=False)  # local, google, firebase

    created_at = db.Column(db.DateTime, default=_utcnow, nullable=False)

    def token_claims(self) -> dict:
        return {
            "id": str(self.id),
            "email": self.email,
            "username": self.username or "",
            "provider": self.provider or "local",
        }

    def to_public(self) -> dict:
        return {"id": self.id, "username": self.username, "email": self.email}
