from datetime import datetime

from beanie import Document, Indexed
from pydantic import Field


class User(Document):
    """Points owner. Accounts are provisioned by the external auth front end."""
    full_name: str = ""
    email: str | None = None
    user_code: Indexed(str, unique=True)
    role_id: int = 1  # 1 student, 2 parent, 3 teacher, 4 admin
    created_at: datetime = Field(default_factory=datetime.utcnow)

    class Settings:
        name = "users"
