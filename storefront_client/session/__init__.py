"""Authentication session: status, principal, login/logout, credential renewal."""
from .manager import SessionManager
from .schema import LoginForm, Principal, SessionStatus, SignUpForm

__all__ = ["LoginForm", "Principal", "SessionManager", "SessionStatus", "SignUpForm"]
