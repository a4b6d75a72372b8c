"""
NB step outcome types.

Each attempt at an NB step resolves to exactly one outcome. The orchestrator's
retry/repair loop is a state machine over these values rather than nested
exception handling:

    Ok               → persist and move on
    ValidationFailed → retry the LLM call with the errors as feedback
    RepairFailed     → repair was attempted and still invalid; retry
    CallFailed       → the LLM call itself raised; retry
"""
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional


@dataclass
class StepOutcome:
    """Common metering carried by every outcome."""
    tokens_used: int = 0
    duration_ms: int = 0
    model: str = ''

    @property
    def ok(self) -> bool:
        return False


@dataclass
class Ok(StepOutcome):
    payload: Dict[str, Any] = field(default_factory=dict)
    repaired: bool = False

    @property
    def ok(self) -> bool:
        return True


@dataclass
class ValidationFailed(StepOutcome):
    errors: List[str] = field(default_factory=list)
    raw_content: Optional[str] = None


@dataclass
class RepairFailed(StepOutcome):
    errors: List[str] = field(default_factory=list)
    repaired_payload: Optional[Dict[str, Any]] = None


@dataclass
class CallFailed(StepOutcome):
    error: Optional[BaseException] = None

    @property
    def errors(self) -> List[str]:
        return [f"LLM call failed: {self.error}"]
