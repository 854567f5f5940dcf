from __future__ import annotations

from abc import ABC, abstractmethod
from typing import AsyncGenerator, Optional

from src.interviewer.tts_types import AudioChunk


class TTSProvider(ABC):
    name: str = ""

    @abstractmethod
    async def synthesize_streaming(
        self,
        text: str,
        *,
        voice: Optional[str] = None,
    ) -> AsyncGenerator[AudioChunk, None]:
        raise NotImplementedError

    def cancel(self) -> None:
        return None

    async def close(self) -> None:
        return None
