"""JSON:API resources returned by the Komunitin social and accounting services.

Resources keep their raw ``attributes`` and ``relationships`` documents and
expose typed accessors for the fields this service reads.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field


def parse_time(value: str | None) -> datetime | None:
    if not value:
        return None
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


class Resource(BaseModel):
    model_config = ConfigDict(frozen=True, extra="ignore")

    id: str
    type: str = ""
    attributes: dict[str, Any] = Field(default_factory=dict)
    relationships: dict[str, Any] = Field(default_factory=dict)

    def related_id(self, name: str) -> str | None:
        """Id of a to-one relationship."""
        data = (self.relationships.get(name) or {}).get("data")
        if isinstance(data, dict):
            return data.get("id")
        return None

    def related_ids(self, name: str) -> list[str]:
        """Ids of a to-many relationship."""
        data = (self.relationships.get(name) or {}).get("data") or []
        return [item["id"] for item in data if isinstance(item, dict) and "id" in item]

    def related_count(self, name: str) -> int:
        """``meta.count`` of a relationship, 0 when absent."""
        meta = (self.relationships.get(name) or {}).get("meta") or {}
        return int(meta.get("count") or 0)


class Group(Resource):
    @property
    def code(self) -> str:
        return self.attributes.get("code", "")

    @property
    def name(self) -> str:
        return self.attributes.get("name", "")

    @property
    def image(self) -> str | None:
        return self.attributes.get("image")

    @property
    def status(self) -> str:
        return self.attributes.get("status", "")

    @property
    def admin_ids(self) -> list[str]:
        return self.related_ids("admins")


class Member(Resource):
    @property
    def code(self) -> str:
        return self.attributes.get("code", "")

    @property
    def name(self) -> str:
        return self.attributes.get("name", "")

    @property
    def image(self) -> str | None:
        return self.attributes.get("image") or None

    @property
    def description(self) -> str:
        return self.attributes.get("description") or ""

    @property
    def created(self) -> datetime | None:
        return parse_time(self.attributes.get("created"))

    @property
    def city(self) -> str | None:
        location = self.attributes.get("location") or {}
        address = self.attributes.get("address") or {}
        return location.get("name") or address.get("addressLocality")

    @property
    def account_id(self) -> str | None:
        return self.related_id("account")

    @property
    def offers_count(self) -> int:
        return self.related_count("offers")

    @property
    def needs_count(self) -> int:
        return self.related_count("needs")


class User(Resource):
    @property
    def email(self) -> str:
        return self.attributes.get("email", "")

    @property
    def settings_id(self) -> str | None:
        return self.related_id("settings")

    @property
    def member_ids(self) -> list[str]:
        return self.related_ids("members")

    def belongs_to(self, member_id: str) -> bool:
        return member_id in self.member_ids


class UserSettings(Resource):
    @property
    def language(self) -> str:
        return self.attributes.get("language") or "en"

    @property
    def account_emails(self) -> bool:
        """Whether the user wants e-mails about their own account. On unless turned off."""
        emails = self.attributes.get("emails") or {}
        return bool(emails.get("myAccount", True))


class Post(Resource):
    """An offer or a need."""

    type: Literal["offers", "needs"]

    @property
    def code(self) -> str:
        return self.attributes.get("code", "")

    @property
    def title(self) -> str:
        # Needs carry no name, their content is the title
        if self.type == "offers":
            return self.attributes.get("name") or ""
        return self.attributes.get("content") or ""

    @property
    def images(self) -> list[str]:
        return self.attributes.get("images") or []

    @property
    def created(self) -> datetime | None:
        return parse_time(self.attributes.get("created"))

    @property
    def expires(self) -> datetime | None:
        return parse_time(self.attributes.get("expires"))

    @property
    def member_id(self) -> str | None:
        return self.related_id("member")


class Account(Resource):
    @property
    def code(self) -> str:
        return self.attributes.get("code", "")

    @property
    def balance(self) -> float:
        return self.attributes.get("balance") or 0


class Transfer(Resource):
    @property
    def amount(self) -> float:
        return self.attributes.get("amount") or 0

    @property
    def state(self) -> str:
        return self.attributes.get("state", "")

    @property
    def meta(self) -> str:
        return self.attributes.get("meta") or ""

    @property
    def payer_id(self) -> str | None:
        return self.related_id("payer")

    @property
    def payee_id(self) -> str | None:
        return self.related_id("payee")


class Currency(Resource):
    id: str = ""

    @property
    def code(self) -> str:
        return self.attributes.get("code", "")

    @property
    def symbol(self) -> str:
        return self.attributes.get("symbol", "")

    @property
    def decimals(self) -> int:
        return int(self.attributes.get("decimals") or 0)

    @property
    def scale(self) -> int:
        return int(self.attributes.get("scale") or 0)

    def format_amount(self, amount: float) -> str:
        """Format an amount given in the currency's minimal units."""
        value = amount / (10 ** self.scale)
        return f"{value:.{self.decimals}f} {self.symbol}".strip()


class UserWithSettings(BaseModel):
    model_config = ConfigDict(frozen=True)

    user: User
    settings: UserSettings | None = None


class MemberWithUsers(BaseModel):
    model_config = ConfigDict(frozen=True)

    member: Member
    users: list[UserWithSettings] = Field(default_factory=list)
