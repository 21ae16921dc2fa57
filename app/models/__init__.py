from app.models.account_link import AccountLink
from app.models.session import UserSession
from app.models.user import User

__all__ = ["User", "AccountLink", "UserSession"]
