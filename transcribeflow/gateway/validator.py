"""Cheap, offline checks on transcription requests.

:class:`RequestValidator` never touches the network.  It rejects requests
the speech service would refuse anyway, so they fail at ``submit()`` time
instead of occupying a slot:

* ``audio_url`` must be an absolute ``http`` or ``https`` URL.
* The URL path must end in a supported audio extension.  A URL without any
  extension only produces a warning (pre-signed URLs often hide it).
* ``language`` must look like ``xx-XX``.
* ``max_speakers``, when diarization is on, must be within 2..10.
* ``expected_duration_s`` above the service's 4 hour limit is a warning.
"""

from __future__ import annotations

import logging
import re
from pathlib import PurePosixPath
from typing import Final
from urllib.parse import urlparse

from transcribeflow.core.models import TranscriptionRequest
from transcribeflow.gateway.base import ValidationReport, Validator

__all__ = ["RequestValidator", "SUPPORTED_FORMATS"]

logger = logging.getLogger(__name__)

#: Audio container formats the service accepts.
SUPPORTED_FORMATS: Final[frozenset[str]] = frozenset({"wav", "mp3", "mp4", "flac", "ogg", "webm"})

_LOCALE_RE: Final[re.Pattern[str]] = re.compile(r"^[a-z]{2}-[A-Z]{2}$")

_MIN_SPEAKERS: Final[int] = 2
_MAX_SPEAKERS: Final[int] = 10

#: Longest audio the service processes in one job (seconds).
_MAX_AUDIO_DURATION_S: Final[float] = 4 * 3600.0


class RequestValidator(Validator):
    """Validate requests against the service's documented limits.

    Args:
        supported_formats: Accepted file extensions, lower case, no dot.
    """

    def __init__(self, supported_formats: frozenset[str] = SUPPORTED_FORMATS) -> None:
        self._formats = supported_formats

    async def validate(self, request: TranscriptionRequest) -> ValidationReport:
        errors: list[str] = []
        warnings: list[str] = []

        url = urlparse(request.audio_url)
        if url.scheme not in ("http", "https") or not url.netloc:
            errors.append(f"audio_url must be an absolute http(s) URL, got {request.audio_url!r}")
        else:
            suffix = PurePosixPath(url.path).suffix.lower().lstrip(".")
            if not suffix:
                warnings.append("audio_url has no file extension; format cannot be checked")
            elif suffix not in self._formats:
                errors.append(
                    f"Audio format {suffix!r} is not supported. "
                    f"Supported formats: {', '.join(sorted(self._formats))}"
                )

        if not _LOCALE_RE.match(request.language):
            errors.append(
                f'Language must be in format "xx-XX" (e.g. "en-US"), got {request.language!r}'
            )

        if request.diarization and request.max_speakers is not None:
            if not _MIN_SPEAKERS <= request.max_speakers <= _MAX_SPEAKERS:
                errors.append(
                    f"max_speakers must be between {_MIN_SPEAKERS} and {_MAX_SPEAKERS}, "
                    f"got {request.max_speakers}"
                )

        if (
            request.expected_duration_s is not None
            and request.expected_duration_s > _MAX_AUDIO_DURATION_S
        ):
            warnings.append("Expected duration exceeds the 4 hour service limit")

        if errors:
            logger.debug("Rejected request for %s: %s", request.audio_url, "; ".join(errors))
        return ValidationReport(valid=not errors, errors=tuple(errors), warnings=tuple(warnings))
