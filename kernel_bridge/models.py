"""
Result shapes returned by KernelClient.

Downstream UI code pattern-matches on these field names and enumerations, so
every normalized reply is built through one of these models and handed out as
a plain dict. The models reject unknown fields (``extra='forbid'``) so a typo
in a normalizer fails loudly instead of leaking into the wire shape.
"""

from enum import Enum
from typing import Any, Dict, Iterable, List, Literal, Mapping, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field


class SecureBaseModel(BaseModel):
    """Base class with extra='forbid' to reject unknown fields."""

    model_config = ConfigDict(extra="forbid")


class RequestKind(str, Enum):
    EVALUATE = "evaluate"
    STATUS = "status"
    AUTOCOMPLETE = "autocomplete"
    INSPECT = "inspect"
    IS_COMPLETE = "is_complete"
    EXECUTE = "execute"


# ============================================================================
# NAMESPACE SNAPSHOT
# ============================================================================

VARIABLE_BUCKETS: Tuple[str, ...] = (
    "function",
    "Series",
    "list",
    "DataFrame",
    "other",
    "dict",
    "ndarray",
)


class VariableSnapshot:
    """
    Names in the kernel namespace grouped into the seven fixed buckets.

    Built fresh for every status query and never mutated; ``to_dict`` hands
    out new lists each time.
    """

    __slots__ = ("_buckets",)

    def __init__(self, buckets: Optional[Mapping[str, Iterable[str]]] = None):
        buckets = buckets or {}
        unknown = set(buckets) - set(VARIABLE_BUCKETS)
        if unknown:
            raise ValueError(f"Unknown variable buckets: {sorted(unknown)}")
        self._buckets = {
            name: tuple(str(v) for v in buckets.get(name, ())) for name in VARIABLE_BUCKETS
        }

    def __getitem__(self, bucket: str) -> Tuple[str, ...]:
        return self._buckets[bucket]

    def __eq__(self, other):
        if isinstance(other, VariableSnapshot):
            return self._buckets == other._buckets
        return NotImplemented

    def __repr__(self):
        return f"VariableSnapshot({self.to_dict()!r})"

    def to_dict(self) -> Dict[str, List[str]]:
        return {name: list(values) for name, values in self._buckets.items()}


class StatusReply(SecureBaseModel):
    cwd: Optional[str] = None
    variables: Optional[Dict[str, List[str]]] = None


# ============================================================================
# SHELL REPLIES
# ============================================================================


class CompleteReply(SecureBaseModel):
    matches: List[str] = Field(default_factory=list)
    status: str = "ok"
    cursor_start: int
    cursor_end: int
    metadata: Dict[str, Any] = Field(default_factory=dict)


class InspectReply(SecureBaseModel):
    status: str = "ok"
    found: bool = False
    data: Dict[str, Any] = Field(default_factory=dict)


class CompletenessReply(SecureBaseModel):
    status: Literal["complete", "incomplete", "invalid", "unknown"]
    # Only present for 'incomplete'
    indent: Optional[str] = None

    def to_wire(self) -> Dict[str, Any]:
        if self.status == "incomplete":
            return {"status": self.status, "indent": self.indent or ""}
        return {"status": self.status}


class ExecuteOk(SecureBaseModel):
    status: Literal["ok"] = "ok"
    user_expressions: Dict[str, Any] = Field(default_factory=dict)
    payload: List[Any] = Field(default_factory=list)


class ExecuteError(SecureBaseModel):
    status: Literal["error"] = "error"
    user_expressions: Dict[str, Any] = Field(default_factory=dict)
    ename: str
    evalue: str
    traceback: List[str] = Field(default_factory=list)


# ============================================================================
# ENVIRONMENT
# ============================================================================


class EnvironmentInfo(SecureBaseModel):
    """What a probe learned about an interpreter. Immutable once built."""

    model_config = ConfigDict(extra="forbid", frozen=True, populate_by_name=True)

    executable: str
    version: str
    cwd: str
    argv: List[str] = Field(default_factory=list)
    packages: List[str] = Field(default_factory=list)
    has_jupyter_kernel: bool = Field(default=False, alias="hasJupyterKernel")

    def to_wire(self) -> Dict[str, Any]:
        return self.model_dump(by_alias=True)
