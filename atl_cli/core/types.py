"""
Core types for requests, response outcomes and provisioning trees.

These dataclasses are shared by the HTTP client, the provisioner and the SDK.
"""

from collections.abc import Callable
from dataclasses import dataclass, field, replace
from typing import Any

DEFAULT_RETRIES = 3

# =============================================================================
# Requests
# =============================================================================


@dataclass(frozen=True)
class Request:
    """A single logical API call. Each retry is a copy with a smaller budget."""

    method: str
    path: str
    body: Any = None
    headers: dict[str, str] = field(default_factory=dict)
    retries: int = DEFAULT_RETRIES

    def retry(self) -> "Request":
        """Return the identical request with one retry consumed."""
        return replace(self, retries=self.retries - 1)


# =============================================================================
# Response Outcomes
# =============================================================================


@dataclass(frozen=True)
class RawResponse:
    """What came back over the wire, before classification."""

    status: int
    text: str
    headers: dict[str, str] = field(default_factory=dict)

    def header(self, name: str) -> str | None:
        """Case-insensitive header lookup."""
        lowered = name.lower()
        for key, value in self.headers.items():
            if key.lower() == lowered:
                return value
        return None


@dataclass(frozen=True)
class Success:
    """2xx response. Payload is parsed JSON, or raw text when not JSON."""

    payload: Any


@dataclass(frozen=True)
class Throttled:
    """429 response with the wait the server asked for."""

    retry_after: float
    body: str = ""


@dataclass(frozen=True)
class Failure:
    """Any other non-2xx response."""

    status: int
    body: str


@dataclass(frozen=True)
class TransportFailure:
    """The request never produced an HTTP response."""

    cause: BaseException


Outcome = Success | Throttled | Failure | TransportFailure


# =============================================================================
# Provisioning Types
# =============================================================================


KEY_FIELDS = ("key", "title", "summary", "name")
CONTENT_FIELDS = ("content", "body", "description")


@dataclass(frozen=True)
class ResourceSpec:
    """A node in a caller-supplied tree of resources to create."""

    key: str
    content: Any = None
    children: list["ResourceSpec"] = field(default_factory=list)
    attributes: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ResourceSpec":
        """Create from a setup-file dict (title/summary/name, body/description, children)."""
        if not isinstance(data, dict):
            raise ValueError(f"Resource must be an object, got {type(data).__name__}")
        key_field = next((f for f in KEY_FIELDS if data.get(f)), None)
        if key_field is None:
            raise ValueError(f"Resource has no identifying field (one of {', '.join(KEY_FIELDS)})")
        content_field = next((f for f in CONTENT_FIELDS if f in data), None)

        skip = {key_field, content_field, "children"}
        return cls(
            key=str(data[key_field]),
            content=data.get(content_field) if content_field else None,
            children=[cls.from_dict(child) for child in data.get("children") or []],
            attributes={k: v for k, v in data.items() if k not in skip},
        )

    @classmethod
    def forest(cls, items: list[dict[str, Any]]) -> list["ResourceSpec"]:
        """Parse a list of root dicts."""
        return [cls.from_dict(item) for item in items]


@dataclass(frozen=True)
class CreationResult:
    """A resource that exists remotely, either freshly created or fetched."""

    id: str | None
    key: str | None
    payload: Any = None
    parent_id: str | None = None

    @classmethod
    def from_payload(
        cls,
        payload: Any,
        natural_key: str | None = None,
        parent_id: str | None = None,
    ) -> "CreationResult":
        """Create from the resource the backend echoed back."""
        if not isinstance(payload, dict):
            return cls(id=None, key=natural_key, payload=payload, parent_id=parent_id)

        raw_id = payload.get("id")
        return cls(
            id=str(raw_id) if raw_id is not None else None,
            key=payload.get("key") or payload.get("title") or natural_key,
            payload=payload,
            parent_id=parent_id,
        )

    def to_dict(self) -> dict[str, Any]:
        """Convert to dict for JSON output."""
        return {"id": self.id, "key": self.key, "parent_id": self.parent_id}


@dataclass(frozen=True)
class CreateCall:
    """
    How to create one resource, and how to find it again if it already exists.

    ``extract`` pulls the single resource out of the fetch payload, for
    endpoints that answer lookups with a search result list.
    """

    create: Request
    fetch: Request | None = None
    extract: Callable[[Any], Any] | None = None


@dataclass(frozen=True)
class Created:
    """Report entry for a node that exists remotely."""

    result: CreationResult

    @property
    def ok(self) -> bool:
        return True

    def to_dict(self) -> dict[str, Any]:
        return {"status": "created", **self.result.to_dict()}


@dataclass(frozen=True)
class Failed:
    """Report entry for a node whose creation failed."""

    key: str
    message: str

    @property
    def ok(self) -> bool:
        return False

    def to_dict(self) -> dict[str, Any]:
        return {"status": "failed", "key": self.key, "error": self.message}


ReportEntry = Created | Failed


@dataclass
class ProvisioningReport:
    """Per-node outcomes of a provisioning run, in pre-order."""

    entries: list[ReportEntry] = field(default_factory=list)

    def add(self, entry: ReportEntry) -> None:
        self.entries.append(entry)

    @property
    def created(self) -> list[CreationResult]:
        """Results of all successful nodes."""
        return [e.result for e in self.entries if isinstance(e, Created)]

    @property
    def failed(self) -> list[Failed]:
        return [e for e in self.entries if isinstance(e, Failed)]

    @property
    def ok(self) -> bool:
        """True when every attempted node succeeded."""
        return not self.failed

    def __len__(self) -> int:
        return len(self.entries)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dict for JSON output."""
        return {
            "entries": [e.to_dict() for e in self.entries],
            "created_count": len(self.created),
            "failed_count": len(self.failed),
        }
