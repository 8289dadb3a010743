"""
Media transcription stage.

Backends turn a fetchable media URL into raw segments; ``normalize_segments``
then enforces the stage contract before anything is persisted:
segments strictly ordered by start, non-overlapping, each with start < end.
Any backend failure is surfaced as ``TranscriptionFailed``.
"""
from __future__ import annotations

import logging
import math
import re
from abc import ABC, abstractmethod
from dataclasses import asdict, dataclass, field
from typing import Any

import httpx
from openai import AsyncOpenAI

from clipforge.errors import TranscriptionFailed
from clipforge.integrations.replicate_api import ReplicateError, run_prediction
from clipforge.settings import get_settings

logger = logging.getLogger(__name__)

DEFAULT_CONFIDENCE = 0.9


@dataclass
class TranscriptSegment:
    id: str
    start: float
    end: float
    text: str
    speaker: str | None = None
    confidence: float = DEFAULT_CONFIDENCE
    is_highlight: bool = False

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "TranscriptSegment":
        return cls(
            id=str(data["id"]),
            start=float(data["start"]),
            end=float(data["end"]),
            text=str(data.get("text") or ""),
            speaker=data.get("speaker"),
            confidence=float(data.get("confidence", DEFAULT_CONFIDENCE)),
            is_highlight=bool(data.get("is_highlight", False)),
        )


@dataclass
class Transcript:
    text: str
    segments: list[TranscriptSegment] = field(default_factory=list)
    duration: float = 0.0
    language: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "text": self.text,
            "segments": [s.to_dict() for s in self.segments],
            "duration": self.duration,
            "language": self.language,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Transcript":
        return cls(
            text=data.get("text") or "",
            segments=[TranscriptSegment.from_dict(s) for s in data.get("segments") or []],
            duration=float(data.get("duration") or 0.0),
            language=data.get("language"),
        )


def _confidence(avg_logprob: float | None) -> float:
    if avg_logprob is None:
        return DEFAULT_CONFIDENCE
    return min(max(math.exp(avg_logprob), 0.0), 1.0)


def normalize_segments(raw: list[dict[str, Any]]) -> list[TranscriptSegment]:
    """Sort, drop empty/zero-length segments, clamp overlaps, renumber ids."""
    cleaned: list[tuple[float, float, str, float, str | None]] = []
    for item in raw:
        try:
            start = float(item["start"])
            end = float(item["end"])
        except (KeyError, TypeError, ValueError):
            continue
        text = str(item.get("text") or "").strip()
        if not text or end <= start or start < 0:
            continue
        confidence = item.get("confidence")
        if confidence is None:
            confidence = _confidence(item.get("avg_logprob"))
        cleaned.append((start, end, text, min(max(float(confidence), 0.0), 1.0), item.get("speaker")))

    cleaned.sort(key=lambda s: (s[0], s[1]))

    segments: list[TranscriptSegment] = []
    for start, end, text, confidence, speaker in cleaned:
        if segments and start < segments[-1].end:
            start = segments[-1].end
            if end <= start:
                # fully swallowed by the previous segment
                segments[-1].text = f"{segments[-1].text} {text}"
                continue
        segments.append(
            TranscriptSegment(
                id=f"seg-{len(segments)}",
                start=round(start, 3),
                end=round(end, 3),
                text=text,
                speaker=speaker,
                confidence=confidence,
            )
        )
    return segments


def build_transcript(
    text: str | None, raw_segments: list[dict[str, Any]], duration: float | None, language: str | None
) -> Transcript:
    segments = normalize_segments(raw_segments)
    full_text = (text or "").strip() or " ".join(s.text for s in segments)
    last_end = segments[-1].end if segments else 0.0
    return Transcript(
        text=full_text,
        segments=segments,
        duration=max(float(duration or 0.0), last_end),
        language=language,
    )


_SRT_TIME = re.compile(
    r"(\d{2}):(\d{2}):(\d{2})[,.](\d{3})\s*-->\s*(\d{2}):(\d{2}):(\d{2})[,.](\d{3})"
)


def parse_srt(srt: str) -> list[dict[str, Any]]:
    segments = []
    for block in re.split(r"\n\s*\n", srt.strip()):
        lines = [line for line in block.splitlines() if line.strip()]
        for i, line in enumerate(lines):
            m = _SRT_TIME.search(line)
            if not m:
                continue
            h1, m1, s1, ms1, h2, m2, s2, ms2 = (int(g) for g in m.groups())
            segments.append({
                "start": h1 * 3600 + m1 * 60 + s1 + ms1 / 1000,
                "end": h2 * 3600 + m2 * 60 + s2 + ms2 / 1000,
                "text": " ".join(lines[i + 1:]),
            })
            break
    return segments


class Transcriber(ABC):
    """Speech-to-text backend."""

    name: str = "unknown"

    @abstractmethod
    async def transcribe(self, media_url: str, *, language: str | None = None) -> Transcript:
        ...


class OpenAITranscriber(Transcriber):
    name = "openai"

    def __init__(self, client: AsyncOpenAI | None = None, model: str | None = None):
        settings = get_settings()
        self._client = client
        self.model = model or settings.openai_transcription_model
        self.timeout = settings.transcription_timeout_sec

    def _get_client(self) -> AsyncOpenAI:
        if self._client is None:
            self._client = AsyncOpenAI(api_key=get_settings().openai_api_key, timeout=float(self.timeout))
        return self._client

    async def _download(self, media_url: str) -> bytes:
        async with httpx.AsyncClient(timeout=self.timeout, follow_redirects=True) as client:
            resp = await client.get(media_url)
            resp.raise_for_status()
            return resp.content

    async def transcribe(self, media_url: str, *, language: str | None = None) -> Transcript:
        try:
            data = await self._download(media_url)
            filename = media_url.rsplit("/", 1)[-1].split("?", 1)[0] or "audio.mp3"
            kwargs: dict[str, Any] = {
                "model": self.model,
                "file": (filename, data),
                "response_format": "verbose_json",
                "timestamp_granularities": ["segment"],
            }
            if language:
                kwargs["language"] = language
            response = await self._get_client().audio.transcriptions.create(**kwargs)
        except Exception as e:
            raise TranscriptionFailed(f"whisper transcription failed: {e}") from e

        payload = response.model_dump() if hasattr(response, "model_dump") else dict(response)
        return build_transcript(
            payload.get("text"),
            payload.get("segments") or [],
            payload.get("duration"),
            payload.get("language") or language,
        )


class ReplicateTranscriber(Transcriber):
    name = "replicate"

    async def transcribe(self, media_url: str, *, language: str | None = None) -> Transcript:
        settings = get_settings()
        try:
            output = await run_prediction(
                settings.replicate_whisper_version,
                {
                    "audio": media_url,
                    "model": "large-v3",
                    "language": language or "en",
                    "translate": False,
                    "temperature": 0,
                    "transcription": "srt",
                    "suppress_tokens": "-1",
                    "logprob_threshold": -1,
                    "no_speech_threshold": 0.6,
                    "condition_on_previous_text": True,
                    "compression_ratio_threshold": 2.4,
                    "temperature_increment_on_fallback": 0.2,
                },
                timeout_s=settings.transcription_timeout_sec,
            )
        except ReplicateError as e:
            raise TranscriptionFailed(f"replicate transcription failed: {e}") from e

        if isinstance(output, dict) and isinstance(output.get("segments"), list):
            raw = output["segments"]
        elif isinstance(output, dict) and isinstance(output.get("transcription"), str):
            raw = parse_srt(output["transcription"])
        elif isinstance(output, str):
            raw = parse_srt(output)
        else:
            raise TranscriptionFailed("replicate transcription returned no segments")
        text = output.get("text") if isinstance(output, dict) else None
        lang = (output.get("detected_language") if isinstance(output, dict) else None) or language
        return build_transcript(text, raw, None, lang)


def _default_transcriber() -> Transcriber:
    if get_settings().transcription_backend == "replicate":
        return ReplicateTranscriber()
    return OpenAITranscriber()


_transcriber: Transcriber | None = None


def get_transcriber() -> Transcriber:
    global _transcriber
    if _transcriber is None:
        _transcriber = _default_transcriber()
    return _transcriber


def set_transcriber(transcriber: Transcriber | None) -> None:
    global _transcriber
    _transcriber = transcriber


async def transcribe_media(media_url: str, *, language: str | None = None) -> Transcript:
    """Run the configured backend and re-check the ordering contract."""
    if not media_url:
        raise TranscriptionFailed("content has no media url")
    transcriber = get_transcriber()
    logger.info(f"[transcription] {transcriber.name}: {media_url[:80]}")
    transcript = await transcriber.transcribe(media_url, language=language)
    # backends may build Transcript directly, so normalize again
    transcript.segments = normalize_segments([s.to_dict() for s in transcript.segments])
    if transcript.segments:
        transcript.duration = max(transcript.duration, transcript.segments[-1].end)
    logger.info(
        f"[transcription] {len(transcript.segments)} segments, duration={transcript.duration:.1f}s"
    )
    return transcript
