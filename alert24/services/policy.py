"""Escalation policy parsing and step timing."""
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Any, List, Optional

from .dispatcher import CHANNELS

TARGET_USER = "user"
TARGET_TEAM = "team"
TARGET_SCHEDULE = "schedule"  # whoever is currently on call
TARGET_TYPES = (TARGET_USER, TARGET_TEAM, TARGET_SCHEDULE)

# A step is never considered timed out sooner than this
MIN_STEP_TIMEOUT_MINUTES = 1


class PolicyError(ValueError):
    """The escalation policy cannot be walked as configured."""


@dataclass
class StepTarget:
    """Who a step pages: a contact, a team, or an on-call schedule."""
    type: str
    id: int

    def __str__(self) -> str:
        return f"{self.type} {self.id}"

    @classmethod
    def from_dict(cls, index: int, data: Any, type_key: str = "type", id_key: str = "id") -> "StepTarget":
        if not isinstance(data, dict):
            raise PolicyError(f"Step {index} has a target that is not an object")
        target_type = data.get(type_key)
        if target_type not in TARGET_TYPES:
            raise PolicyError(f"Step {index} has unsupported target type '{target_type}'")
        try:
            target_id = int(data[id_key])
        except (KeyError, TypeError, ValueError):
            raise PolicyError(f"Step {index} needs an integer {id_key}")
        return cls(type=target_type, id=target_id)


@dataclass
class EscalationStep:
    """One entry of ``EscalationPolicy.escalation_steps``."""
    delay_minutes: int
    targets: List[StepTarget] = field(default_factory=list)
    channels: Optional[List[str]] = None
    timeout_minutes: Optional[int] = None

    @classmethod
    def from_dict(cls, index: int, data: Any) -> "EscalationStep":
        if not isinstance(data, dict):
            raise PolicyError(f"Step {index} is not an object")
        try:
            delay = int(data.get("delay_minutes", 0))
        except (TypeError, ValueError):
            raise PolicyError(f"Step {index} needs an integer delay_minutes")
        if delay < 0:
            raise PolicyError(f"Step {index} has a negative delay")

        # Either a list of targets, or the single target_type/target_id form
        if "targets" in data:
            raw_targets = data["targets"]
            if not isinstance(raw_targets, list) or not raw_targets:
                raise PolicyError(f"Step {index} targets must be a non-empty list")
            targets = [StepTarget.from_dict(index, t) for t in raw_targets]
        else:
            targets = [StepTarget.from_dict(index, data, "target_type", "target_id")]

        channels = data.get("channels")
        if channels is not None:
            if not isinstance(channels, list) or not channels:
                raise PolicyError(f"Step {index} channels must be a non-empty list")
            unknown = [c for c in channels if c not in CHANNELS]
            if unknown:
                raise PolicyError(f"Step {index} has unknown channels {unknown}")

        timeout = data.get("timeout_minutes")
        if timeout is not None:
            try:
                timeout = int(timeout)
            except (TypeError, ValueError):
                raise PolicyError(f"Step {index} timeout_minutes must be an integer")

        return cls(
            delay_minutes=delay,
            targets=targets,
            channels=channels,
            timeout_minutes=timeout,
        )


def parse_steps(raw: Any) -> List[EscalationStep]:
    """Parse and validate a policy's steps. Delays must not decrease."""
    if not isinstance(raw, list) or not raw:
        raise PolicyError("Escalation policy has no steps")
    steps = [EscalationStep.from_dict(i, item) for i, item in enumerate(raw)]
    for previous, current in zip(steps, steps[1:]):
        if current.delay_minutes < previous.delay_minutes:
            raise PolicyError("Escalation step delays must be in non-decreasing order")
    return steps


def step_timeout(steps: List[EscalationStep], index: int, last_step_timeout_minutes: int) -> timedelta:
    """How long a notified step waits for acknowledgement before timing out.

    An explicit ``timeout_minutes`` wins; otherwise the gap to the next step's
    delay, and for the last step the policy-level timeout.
    """
    step = steps[index]
    if step.timeout_minutes is not None:
        minutes = step.timeout_minutes
    elif index + 1 < len(steps):
        minutes = steps[index + 1].delay_minutes - step.delay_minutes
    else:
        minutes = last_step_timeout_minutes
    return timedelta(minutes=max(minutes, MIN_STEP_TIMEOUT_MINUTES))
