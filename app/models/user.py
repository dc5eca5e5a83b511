from datetime import datetime

from beanie import Document, Indexed
from pydantic import Field


class User(Document):
    """Local mirror of an identity-provider account; credentials live elsewhere."""

    email: Indexed(str, unique=True)
    name: str = ""
    role: str = "user"  # "user" | "admin"
    session_version: int = 0
    created_at: datetime = Field(default_factory=datetime.utcnow)

    class Settings:
        name = "users"
