"""Pydantic models for the authenticated session."""
from enum import Enum

from pydantic import AliasChoices, BaseModel, ConfigDict, Field


class SessionStatus(str, Enum):
    UNAUTHENTICATED = "unauthenticated"
    CHECKING = "checking"
    AUTHENTICATED = "authenticated"


class Principal(BaseModel):
    """The signed-in user as returned by the API. Extra profile fields are kept."""
    model_config = ConfigDict(extra="allow", populate_by_name=True)

    id: str = Field(default="", validation_alias=AliasChoices("id", "_id", "userId"))
    name: str = ""
    email: str = ""
    role: str = "customer"
    phone: str = ""


class LoginForm(BaseModel):
    email: str = ""
    password: str = ""

    def to_payload(self) -> dict:
        return {"email": self.email, "password": self.password}


class SignUpForm(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    name: str = ""
    email: str = ""
    phone: str = ""
    password: str = ""
    confirm_password: str = Field(default="", validation_alias=AliasChoices("confirm_password", "confirmPassword"))

    def to_payload(self) -> dict:
        payload = {"name": self.name, "email": self.email, "password": self.password}
        if self.phone:
            payload["phone"] = self.phone
        return payload
