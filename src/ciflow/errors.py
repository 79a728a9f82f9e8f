# errors.py
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict


@dataclass
class CIError(Exception):
    """
    Structured CI error with enough context for:
      - clean CLI output
      - API error bodies
      - debugging without full tracebacks
    """
    kind: str
    message: str
    details: Dict[str, Any] = field(default_factory=dict)

    def __str__(self) -> str:
        lines = [f"{self.kind}: {self.message}"]
        for k, v in self.details.items():
            lines.append(f"{k}={v}")
        return "\n".join(lines)

    def to_dict(self) -> Dict[str, Any]:
        return {"kind": self.kind, "message": self.message, "details": dict(self.details)}


# ----------------------------------------------------------------------
# Configuration (fatal, raised before a run exists)
# ----------------------------------------------------------------------

CYCLIC_DEPENDENCY = "CyclicDependency"
UNKNOWN_DEPENDENCY = "UnknownDependency"
DUPLICATE_JOB = "DuplicateJob"
EMPTY_MATRIX = "EmptyMatrix"
MALFORMED_CONDITION = "MalformedCondition"
MALFORMED_CRON = "MalformedCron"
MALFORMED_DOCUMENT = "MalformedDocument"


class ConfigError(CIError):
    """Pipeline description is invalid; no run can start from it."""


# ----------------------------------------------------------------------
# Step execution
# ----------------------------------------------------------------------

@dataclass
class StepFailure(Exception):
    job: str
    step: str
    cmd: str
    exit_code: int
    stdout: str = ""
    stderr: str = ""

    def __str__(self) -> str:
        return f"[{self.job}] step '{self.step}' failed (exit={self.exit_code}): {self.cmd}"


# ----------------------------------------------------------------------
# Artifact store contract violations
# ----------------------------------------------------------------------

class ArtifactError(CIError):
    """Base for artifact store contract violations."""


class DuplicateArtifact(ArtifactError):
    pass


class ArtifactNotFound(ArtifactError):
    pass


class ScopeViolation(ArtifactError):
    pass


# ----------------------------------------------------------------------
# Coordinator
# ----------------------------------------------------------------------

class RunNotFound(CIError):
    pass


def config_error(kind: str, message: str, **details: Any) -> ConfigError:
    return ConfigError(kind=kind, message=message, details=details)
