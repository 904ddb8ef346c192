"""Annotation types shared by the store, the host channel and the HTTP surface.

Wire payloads use the remote store's camelCase field names; ``timestamp`` is
the playback position in seconds and ``createdAt`` is epoch milliseconds.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any


@dataclass
class Reply:
    """A reply attached to an annotation."""

    id: str
    parent_annotation_id: str
    text: str
    author_id: str
    author_name: str
    created_at: int

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "parentId": self.parent_annotation_id,
            "text": self.text,
            "authorId": self.author_id,
            "authorName": self.author_name,
            "createdAt": self.created_at,
        }

    @classmethod
    def from_remote(cls, reply_id: str, parent_id: str, data: dict[str, Any]) -> Reply:
        return cls(
            id=reply_id,
            parent_annotation_id=parent_id,
            text=str(data.get("text", "")),
            author_id=str(data.get("authorId", "")),
            author_name=data.get("authorName") or "Anonymous",
            created_at=int(data.get("createdAt") or 0),
        )

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Reply:
        return cls.from_remote(str(data["id"]), str(data.get("parentId", "")), data)


@dataclass
class Annotation:
    """A timestamped comment pinned to a position within one piece of content."""

    id: str
    content_key: str
    text: str
    position: int
    author_id: str
    author_name: str
    created_at: int
    like_count: int = 0
    liked_by_current_actor: bool = False
    platform: str | None = None
    replies: list[Reply] = field(default_factory=list)

    def remote_body(self) -> dict[str, Any]:
        """Body persisted to ``comments/{contentKey}``. Likes and replies live elsewhere."""
        return {
            "text": self.text,
            "timestamp": self.position,
            "authorId": self.author_id,
            "authorName": self.author_name,
            "likes": 0,
            "createdAt": self.created_at,
            "platform": self.platform,
        }

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "videoId": self.content_key,
            "text": self.text,
            "timestamp": self.position,
            "authorId": self.author_id,
            "authorName": self.author_name,
            "likes": self.like_count,
            "likedByUser": self.liked_by_current_actor,
            "createdAt": self.created_at,
            "platform": self.platform,
            "replies": [r.to_dict() for r in self.replies],
        }

    @classmethod
    def from_remote(cls, annotation_id: str, content_key: str, data: dict[str, Any]) -> Annotation:
        return cls(
            id=annotation_id,
            content_key=content_key,
            text=str(data.get("text", "")),
            position=int(data.get("timestamp") or 0),
            author_id=str(data.get("authorId", "")),
            author_name=data.get("authorName") or data.get("author") or "Anonymous",
            created_at=int(data.get("createdAt") or 0),
            like_count=int(data.get("likes") or 0),
            platform=data.get("platform"),
        )

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Annotation:
        """Rebuild from :meth:`to_dict` output (local snapshots, channel payloads)."""
        annotation = cls.from_remote(str(data["id"]), str(data.get("videoId", "")), data)
        annotation.liked_by_current_actor = bool(data.get("likedByUser", False))
        annotation.replies = [Reply.from_dict(r) for r in data.get("replies") or []]
        return annotation


def sort_by_position(annotations: list[Annotation]) -> list[Annotation]:
    """Order annotations by playback position; ties keep creation order."""
    return sorted(annotations, key=lambda a: (a.position, a.created_at))
