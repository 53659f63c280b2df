"""Core data models used across releasebell."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Tuple


@dataclass(frozen=True)
class Release:
    """A single published release of a repository."""

    name: str
    description: str
    url: str
    published_at: datetime
    is_prerelease: bool = False


@dataclass(frozen=True)
class Repository:
    """Represents a repository together with the release being announced."""

    owner: str
    name: str
    url: str
    release: Release

    @property
    def full_name(self) -> str:
        return f"{self.owner}/{self.name}"


@dataclass(frozen=True)
class AttachmentField:
    title: str
    value: str
    short: bool = False

    def as_dict(self) -> dict:
        return {"title": self.title, "value": self.value, "short": self.short}


@dataclass(frozen=True)
class SlackAttachment:
    """Slack's legacy attachment block: color bar, fields and footer."""

    fallback: str
    text: str
    pretext: str
    color: str
    title: str
    title_link: str
    fields: Tuple[AttachmentField, ...]
    footer: str
    footer_icon: str
    mrkdwn_in: Tuple[str, ...]
    ts: int

    def as_dict(self) -> dict:
        """Return the JSON-friendly shape Slack expects."""
        # json has no tuple type, so the nested sequences go out as lists.
        return {
            "fallback": self.fallback,
            "text": self.text,
            "pretext": self.pretext,
            "color": self.color,
            "title": self.title,
            "title_link": self.title_link,
            "fields": [field.as_dict() for field in self.fields],
            "footer": self.footer,
            "footer_icon": self.footer_icon,
            "mrkdwn_in": list(self.mrkdwn_in),
            "ts": self.ts,
        }


@dataclass(frozen=True)
class SlackPayload:
    attachments: Tuple[SlackAttachment, ...]

    def as_dict(self) -> dict:
        return {"attachments": [attachment.as_dict() for attachment in self.attachments]}
