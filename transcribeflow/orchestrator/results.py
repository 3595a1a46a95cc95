"""Result collection and normalisation for finished jobs.

:class:`ResultCollector` lists the artifacts of a finished remote job,
picks the transcription document, checks its size, downloads and parses it,
and turns the time-coded recognition data into a
:class:`~transcribeflow.core.models.TranscriptionResult`.

Remote document shape (only the fields read here)::

    {
      "source": "https://host/audio/meeting.wav",
      "duration": "PT1H2M3.5S",
      "durationInTicks": 37235000000,
      "recognizedPhrases": [
        {
          "speaker": 0,
          "offsetInTicks": 0,
          "durationInTicks": 25000000,
          "nBest": [
            {"confidence": 0.93, "display": "Hello there.",
             "words": [{"word": "hello", "offsetInTicks": 0,
                        "durationInTicks": 5000000, "confidence": 0.95}]}
          ]
        }
      ]
    }

Offsets are 100-nanosecond ticks.  Phrases whose best hypothesis falls
below ``min_confidence`` are left out of the text and the segment list but
still count towards speaker statistics.
"""

from __future__ import annotations

import json
import logging
import re
from collections.abc import Awaitable, Callable
from datetime import UTC, datetime
from pathlib import PurePosixPath
from typing import Final, TypeVar
from urllib.parse import urlparse

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from transcribeflow.core import events
from transcribeflow.core.exceptions import ResultCollectionError, ResultErrorKind
from transcribeflow.core.models import (
    ManagedJob,
    SpeakerStats,
    TranscriptionResult,
    TranscriptSegment,
    WordTiming,
)
from transcribeflow.gateway.base import RemoteStatus, ResultFetch, ResultFile
from transcribeflow.resilience.guard import ServiceGuard
from transcribeflow.resilience.retry import RetryCoordinator, RetryPolicy

__all__ = [
    "CollectorConfig",
    "ResultCollector",
    "parse_transcript",
    "normalise_transcript",
    "ticks_to_seconds",
    "parse_iso_duration",
]

logger = logging.getLogger(__name__)

T = TypeVar("T")

#: Ticks per second (100 ns resolution).
_TICKS_PER_SECOND: Final[int] = 10_000_000

_ISO_DURATION_RE: Final[re.Pattern[str]] = re.compile(
    r"^PT(?:(?P<h>\d+)H)?(?:(?P<m>\d+)M)?(?:(?P<s>\d+(?:\.\d+)?)S)?$"
)


class CollectorConfig(BaseModel):
    """Result collection tuning.

    Attributes:
        max_result_bytes: Largest result document accepted.
        min_confidence: Phrases below this confidence are dropped.
        include_word_timestamps: Keep word timings when the request asked for them.
        include_speakers: Aggregate per-speaker statistics.
        result_kind: Artifact kind holding the transcription document.
        fetch_attempts: Attempts per listing or download call.
    """

    model_config = ConfigDict(frozen=True)

    max_result_bytes: int = Field(default=100 * 1024 * 1024, gt=0)
    min_confidence: float = Field(default=0.5, ge=0, le=1)
    include_word_timestamps: bool = True
    include_speakers: bool = True
    result_kind: str = "Transcription"
    fetch_attempts: int = Field(default=3, ge=1)


# ---------------------------------------------------------------------------
# Raw document
# ---------------------------------------------------------------------------


class _Raw(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")


class _RawWord(_Raw):
    word: str
    offset_ticks: int = Field(default=0, alias="offsetInTicks", ge=0)
    duration_ticks: int = Field(default=0, alias="durationInTicks", ge=0)
    confidence: float | None = None


class _RawHypothesis(_Raw):
    confidence: float = 0.0
    display: str = ""
    lexical: str = ""
    words: list[_RawWord] = Field(default_factory=list)


class _RawPhrase(_Raw):
    speaker: int | None = None
    offset_ticks: int = Field(default=0, alias="offsetInTicks", ge=0)
    duration_ticks: int = Field(default=0, alias="durationInTicks", ge=0)
    n_best: list[_RawHypothesis] = Field(default_factory=list, alias="nBest")


class _RawTranscript(_Raw):
    source: str = ""
    duration: str | None = None
    duration_ticks: int | None = Field(default=None, alias="durationInTicks", ge=0)
    recognized_phrases: list[_RawPhrase] = Field(
        default_factory=list, alias="recognizedPhrases"
    )


def ticks_to_seconds(ticks: int) -> float:
    return ticks / _TICKS_PER_SECOND


def parse_iso_duration(value: str | None) -> float:
    """Parse ``PT#H#M#S`` into seconds; anything else yields ``0.0``."""
    if not value:
        return 0.0
    match = _ISO_DURATION_RE.match(value.strip())
    if match is None:
        return 0.0
    hours = int(match["h"] or 0)
    minutes = int(match["m"] or 0)
    seconds = float(match["s"] or 0)
    return hours * 3600 + minutes * 60 + seconds


def parse_transcript(payload: bytes | str, job_id: str | None = None) -> _RawTranscript:
    """Decode and validate a raw result document.

    Raises:
        ResultCollectionError: ``PARSE_ERROR`` when the payload is not a
            JSON object of the expected shape.
    """
    try:
        data = json.loads(payload)
    except (json.JSONDecodeError, UnicodeDecodeError) as exc:
        raise ResultCollectionError(
            ResultErrorKind.PARSE_ERROR, f"Result document is not valid JSON: {exc}", job_id
        ) from exc
    if not isinstance(data, dict):
        raise ResultCollectionError(
            ResultErrorKind.PARSE_ERROR, "Result document is not a JSON object", job_id
        )
    try:
        return _RawTranscript.model_validate(data)
    except ValidationError as exc:
        raise ResultCollectionError(
            ResultErrorKind.PARSE_ERROR,
            f"Result document has an unexpected shape: {exc.error_count()} error(s)",
            job_id,
        ) from exc


# ---------------------------------------------------------------------------
# Normalisation
# ---------------------------------------------------------------------------


def _audio_format(*urls: str) -> str:
    for url in urls:
        if not url:
            continue
        suffix = PurePosixPath(urlparse(url).path).suffix
        if suffix:
            return suffix[1:].lower()
    return "unknown"


def _clamp(value: float) -> float:
    return min(1.0, max(0.0, value))


def _speaker_label(speaker: int) -> str:
    return f"Speaker {speaker + 1}"


def _speaker_stats(phrases: list[_RawPhrase]) -> tuple[SpeakerStats, ...]:
    totals: dict[int, list[float]] = {}
    for phrase in phrases:
        if phrase.speaker is None or not phrase.n_best:
            continue
        entry = totals.setdefault(phrase.speaker, [0.0, 0.0, 0])
        entry[0] += ticks_to_seconds(phrase.duration_ticks)
        entry[1] += _clamp(phrase.n_best[0].confidence)
        entry[2] += 1
    return tuple(
        SpeakerStats(
            speaker_id=_speaker_label(speaker),
            total_speaking_time_s=time_s,
            mean_confidence=conf_sum / count,
            segment_count=int(count),
        )
        for speaker, (time_s, conf_sum, count) in sorted(totals.items())
    )


def normalise_transcript(
    raw: _RawTranscript,
    job: ManagedJob,
    config: CollectorConfig,
    *,
    collected_at: datetime | None = None,
) -> TranscriptionResult:
    """Turn a parsed document into a :class:`TranscriptionResult`."""
    with_words = config.include_word_timestamps and job.request.word_timestamps
    segments: list[TranscriptSegment] = []
    for phrase in raw.recognized_phrases:
        if not phrase.n_best:
            continue
        best = phrase.n_best[0]
        if best.confidence < config.min_confidence:
            continue
        start = ticks_to_seconds(phrase.offset_ticks)
        words: tuple[WordTiming, ...] = ()
        if with_words:
            words = tuple(
                WordTiming(
                    word=w.word,
                    start_s=ticks_to_seconds(w.offset_ticks),
                    end_s=ticks_to_seconds(w.offset_ticks + w.duration_ticks),
                    confidence=w.confidence,
                )
                for w in best.words
            )
        segments.append(
            TranscriptSegment(
                text=best.display or best.lexical,
                start_s=start,
                end_s=start + ticks_to_seconds(phrase.duration_ticks),
                confidence=_clamp(best.confidence),
                speaker_id=_speaker_label(phrase.speaker) if phrase.speaker is not None else None,
                words=words,
            )
        )

    duration = parse_iso_duration(raw.duration)
    if not duration and raw.duration_ticks:
        duration = ticks_to_seconds(raw.duration_ticks)

    speakers: tuple[SpeakerStats, ...] = ()
    if config.include_speakers and job.request.diarization:
        speakers = _speaker_stats(raw.recognized_phrases)

    confidence = sum(s.confidence for s in segments) / len(segments) if segments else 0.0
    return TranscriptionResult(
        job_id=job.job_id,
        external_job_id=job.external_job_id or "",
        text=" ".join(s.text for s in segments if s.text),
        confidence=confidence,
        duration_s=duration,
        language=job.request.language,
        audio_format=_audio_format(raw.source, job.request.audio_url),
        segments=tuple(segments),
        speakers=speakers,
        collected_at=collected_at or datetime.now(UTC),
    )


# ---------------------------------------------------------------------------
# Collector
# ---------------------------------------------------------------------------


class ResultCollector:
    """Fetch, validate and normalise the output of finished jobs.

    Every remote call is retried by *retry* and passes through *guard*.

    Args:
        result_fetch: Collaborator listing and downloading artifacts.
        guard: Shared rate limiter and breaker.
        retry: Retry coordinator for listing and download calls.
        config: Collection tuning.
    """

    def __init__(
        self,
        result_fetch: ResultFetch,
        guard: ServiceGuard,
        retry: RetryCoordinator | None = None,
        config: CollectorConfig | None = None,
    ) -> None:
        self._result_fetch = result_fetch
        self._guard = guard
        self._retry = retry or RetryCoordinator()
        self.config = config or CollectorConfig()
        self._policy: RetryPolicy = self._retry.policy.model_copy(
            update={"max_attempts": self.config.fetch_attempts}
        )

    async def collect(
        self,
        job: ManagedJob,
        *,
        remote_status: RemoteStatus | None = None,
    ) -> TranscriptionResult:
        """Collect the result of *job*.

        Args:
            job: The job whose remote counterpart finished.
            remote_status: Last remote status seen, when known.

        Raises:
            ResultCollectionError: The result is missing, oversized,
                corrupted, or cannot be parsed, or the job has not succeeded.
            Exception: A listing or download call failed after retries.
        """
        external_id = job.external_job_id
        if not external_id:
            raise ResultCollectionError(
                ResultErrorKind.INVALID_JOB_ID, "Job has no external job id", job.job_id
            )
        if remote_status is not None and remote_status is not RemoteStatus.SUCCEEDED:
            raise ResultCollectionError(
                ResultErrorKind.JOB_NOT_COMPLETED,
                f"Remote job {external_id} is {remote_status}, not Succeeded",
                job.job_id,
            )

        files = await self._fetch(
            lambda: self._result_fetch.list_result_files(external_id), job, "list results"
        )
        document = self._select(files)
        if document is None:
            raise ResultCollectionError(
                ResultErrorKind.RESULTS_NOT_FOUND,
                f"No {self.config.result_kind} artifact for remote job {external_id}",
                job.job_id,
            )
        self._check_size(document.size_bytes, job)
        if not document.content_url:
            raise ResultCollectionError(
                ResultErrorKind.CORRUPTED_DATA,
                f"Artifact {document.name} has no content URL",
                job.job_id,
            )

        payload = await self._fetch(
            lambda: self._result_fetch.download_file(document), job, "download result"
        )
        self._check_size(len(payload), job)

        result = normalise_transcript(parse_transcript(payload, job.job_id), job, self.config)
        logger.info(
            "Collected result for job %s: %d segment(s), confidence %.2f",
            job.job_id,
            len(result.segments),
            result.confidence,
            extra={"event": events.RESULT_COLLECTED},
        )
        return result

    async def check_availability(self, external_job_id: str) -> ResultFile | None:
        """Return the transcription artifact of *external_job_id*, if listed.

        Listing errors are logged and reported as ``None``.
        """
        try:
            files = await self._guard.call(
                lambda: self._result_fetch.list_result_files(external_job_id),
                source="results",
            )
        except Exception as exc:  # noqa: BLE001
            logger.warning(
                "Could not list results for remote job %s: %s",
                external_job_id,
                exc,
                extra={"event": events.RESULT_ERROR},
            )
            return None
        return self._select(files)

    def _select(self, files: list[ResultFile]) -> ResultFile | None:
        return next((f for f in files if f.kind == self.config.result_kind), None)

    def _check_size(self, size: int | None, job: ManagedJob) -> None:
        if size is not None and size > self.config.max_result_bytes:
            raise ResultCollectionError(
                ResultErrorKind.CORRUPTED_DATA,
                f"Result size {size} bytes exceeds the maximum of "
                f"{self.config.max_result_bytes} bytes",
                job.job_id,
            )

    async def _fetch(
        self,
        operation: Callable[[], Awaitable[T]],
        job: ManagedJob,
        label: str,
    ) -> T:
        async def _guarded() -> T:
            return await self._guard.call(operation, source="results", priority=job.priority)

        outcome = await self._retry.execute(
            _guarded, policy=self._policy, label=f"{label} for job {job.job_id}"
        )
        return outcome.unwrap()
