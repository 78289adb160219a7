from __future__ import annotations

import copy
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Any, Dict, List, Tuple

from ..errors import StepLimitExceededError
from ..models import AdapterResult, Coordinates
from .tools import GEOCODE

if TYPE_CHECKING:
    from .profiles import ReportProfile

logger = logging.getLogger(__name__)


class Phase(str, Enum):
    COLLECTING = "collecting"
    AWAITING_MODEL = "awaiting_model"
    DISPATCHING_TOOLS = "dispatching_tools"
    FINALIZING = "finalizing"
    DONE = "done"
    FAILED = "failed"


# FINALIZING goes back to AWAITING_MODEL after a corrective re-prompt.
TRANSITIONS: Dict[Phase, Tuple[Phase, ...]] = {
    Phase.COLLECTING: (Phase.AWAITING_MODEL, Phase.FAILED),
    Phase.AWAITING_MODEL: (Phase.DISPATCHING_TOOLS, Phase.FINALIZING, Phase.FAILED),
    Phase.DISPATCHING_TOOLS: (Phase.COLLECTING, Phase.FAILED),
    Phase.FINALIZING: (Phase.AWAITING_MODEL, Phase.DONE, Phase.FAILED),
    Phase.DONE: (),
    Phase.FAILED: (),
}


class Transcript:
    """Append-only conversation log sent to the model, bounded in length."""

    def __init__(self, max_messages: int) -> None:
        self.max_messages = max_messages
        self._messages: List[Dict[str, Any]] = []

    def __len__(self) -> int:
        return len(self._messages)

    def append(self, message: Dict[str, Any]) -> None:
        if len(self._messages) >= self.max_messages:
            raise StepLimitExceededError(
                f"Conversation exceeded {self.max_messages} messages without a final report"
            )
        self._messages.append(message)

    def to_list(self) -> List[Dict[str, Any]]:
        """Copies of the messages, safe to hand to the model client."""
        return copy.deepcopy(self._messages)


@dataclass
class SessionState:
    """Everything one report run knows. Created per request, never shared."""

    profile: ReportProfile
    transcript: Transcript
    coords: Coordinates | None = None
    address: str | None = None
    radius_m: int = 1200
    coords_from_user: bool = False
    label: str | None = None
    tool_results: Dict[str, AdapterResult] = field(default_factory=dict)
    limitations: List[str] = field(default_factory=list)
    used: Dict[str, bool] = field(default_factory=dict)
    steps: int = 0
    phase: Phase = Phase.COLLECTING
    geocode_failed: bool = False
    report_markdown: str | None = None
    children: Dict[str, SessionState] = field(default_factory=dict)
    tool_log: List[Dict[str, Any]] = field(default_factory=list)

    @classmethod
    def create(
        cls,
        profile: ReportProfile,
        *,
        coords: Coordinates | None = None,
        address: str | None = None,
        radius_m: int = 1200,
        max_tool_calls: int = 8,
        label: str | None = None,
    ) -> SessionState:
        # system + opening, then per turn: assistant, its tool results, one correction
        max_messages = 2 + profile.max_steps * (2 + max_tool_calls)
        return cls(
            profile=profile,
            transcript=Transcript(max_messages),
            coords=coords,
            address=address.strip() if address else None,
            radius_m=radius_m,
            coords_from_user=coords is not None,
            label=label,
        )

    @property
    def geocode_required(self) -> bool:
        return bool(self.address) and not self.coords_from_user

    def required_tools(self) -> List[str]:
        required = list(self.profile.mandatory_tools)
        if self.geocode_required:
            required.insert(0, GEOCODE)
        return required

    def missing_tools(self) -> List[str]:
        missing = [name for name in self.required_tools() if not self.used.get(name)]
        for child in self.children.values():
            missing += [f"{child.label}: {name}" for name in child.missing_tools()]
        return missing

    def mark_used(self, name: str) -> None:
        self.used[name] = True

    def record_result(self, name: str, result: AdapterResult) -> None:
        # One slot per tool; a repeated call replaces the previous result.
        self.tool_results[name] = result

    def payload(self, name: str) -> Dict[str, Any] | None:
        result = self.tool_results.get(name)
        return result.to_payload() if result is not None else None

    def add_limitation(self, text: str) -> None:
        self.limitations.append(text)

    def bundle(self) -> Dict[str, Any]:
        """Coordinates plus every result field of the profile."""
        data: Dict[str, Any] = {"coords": self.coords.to_dict() if self.coords else None}
        for tool, key in self.profile.result_fields:
            data[key] = self.payload(tool)
        return data

    def transition(self, phase: Phase) -> None:
        if phase not in TRANSITIONS[self.phase]:
            raise RuntimeError(f"Illegal phase transition {self.phase.value} -> {phase.value}")
        logger.debug("[%s] %s -> %s", self.profile.name, self.phase.value, phase.value)
        self.phase = phase

    def begin_model_turn(self) -> None:
        """Enter AWAITING_MODEL, refusing once the step bound is spent."""
        if self.steps >= self.profile.max_steps:
            raise StepLimitExceededError(
                f"The model did not complete the report within {self.profile.max_steps} steps"
            )
        self.transition(Phase.AWAITING_MODEL)
        self.steps += 1

    def fail(self) -> None:
        if self.phase not in (Phase.DONE, Phase.FAILED):
            self.phase = Phase.FAILED
