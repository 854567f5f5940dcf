from __future__ import annotations

import time
from dataclasses import dataclass, field
from typing import Any, Optional


@dataclass
class AudioChunk:
    """
    A chunk of synthesized audio.

    `audio` is either raw mono PCM16 at `sample_rate` or a complete WAV file
    (whose header then wins). Chunks are consumed once, in `sequence_hint`
    order, by the playback scheduler.
    """

    audio: bytes
    sample_rate: int = 24000
    sequence_hint: int = 0
    is_final: bool = False
    timestamp: float = field(default_factory=time.time)

    # Optional: structured metadata for debugging/metrics.
    meta: Optional[dict[str, Any]] = None
