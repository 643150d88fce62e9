"""Instance references, creation specs and the lifecycle manager interface."""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field


class InstanceNotFoundError(LookupError):
    """Raised when an instance lookup fails."""

    def __init__(self, name: str = "") -> None:
        message = f"instance not found: {name}" if name else "instance not found"
        super().__init__(message)
        self.name = name


@dataclass(frozen=True)
class InstanceRef:
    """A reachable klaus instance."""

    name: str
    base_url: str = ""
    mcp_url: str = ""
    status: str = ""


@dataclass
class CreateSpec:
    """Input to Manager.create; drivers use the subset they understand."""

    name: str = ""
    channel: str = ""
    channel_id: str = ""
    user_id: str = ""
    thread_id: str = ""
    metadata: dict[str, str] = field(default_factory=dict)


class Manager(ABC):
    """A lifecycle driver that creates and queries klaus instances."""

    @abstractmethod
    def get(self, name: str) -> InstanceRef:
        """Return the instance called name or raise InstanceNotFoundError."""

    @abstractmethod
    def create(self, spec: CreateSpec) -> InstanceRef:
        """Create (or resolve) an instance described by spec."""

    @abstractmethod
    def list(self) -> list[InstanceRef]:
        """Return every known instance."""

    @abstractmethod
    def stop(self, name: str) -> None:
        """Stop the instance called name."""