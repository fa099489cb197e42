"""
GenerationResult - Outcome of one derivative generation run.
"""

import time
from dataclasses import dataclass, field
from typing import Dict

from .asset_record import DerivativeDescriptor


@dataclass
class GenerationResult:
    """
    Results for a single source image.

    Attributes:
        permanent_path: Source key in the permanent location
        derivatives: Successful sizes, by size name
        failures: Error message per failed size
        start_time: Start timestamp
        end_time: Set by finish()
    """
    permanent_path: str
    derivatives: Dict[str, DerivativeDescriptor] = field(default_factory=dict)
    failures: Dict[str, str] = field(default_factory=dict)
    start_time: float = field(default_factory=time.monotonic)
    end_time: float = 0.0

    def finish(self) -> 'GenerationResult':
        self.end_time = time.monotonic()
        return self

    @property
    def elapsed_seconds(self) -> float:
        """Elapsed time in seconds."""
        return (self.end_time or time.monotonic()) - self.start_time

    @property
    def succeeded(self) -> bool:
        """At least one size was generated."""
        return bool(self.derivatives)

    @property
    def bytes_generated(self) -> int:
        return sum(d.byte_size for d in self.derivatives.values())

    def failure_summary(self) -> str:
        return '; '.join(f"{size}: {message}" for size, message in sorted(self.failures.items()))

    def to_dict(self) -> dict:
        return {
            'permanentPath': self.permanent_path,
            'derivatives': {name: d.to_dict() for name, d in self.derivatives.items()},
            'failures': dict(self.failures),
            'bytesGenerated': self.bytes_generated,
            'elapsedSeconds': round(self.elapsed_seconds, 3),
        }
