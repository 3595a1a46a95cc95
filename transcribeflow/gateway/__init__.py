"""Remote speech service contracts, the httpx client, and request validation."""

from transcribeflow.gateway.base import (
    RemoteStatus,
    ResultFetch,
    ResultFile,
    StatusQuery,
    StatusReport,
    SubmissionGateway,
    SubmissionReceipt,
    ValidationReport,
    Validator,
)
from transcribeflow.gateway.http_client import SpeechServiceClient
from transcribeflow.gateway.validator import RequestValidator

__all__ = [
    "RemoteStatus",
    "SubmissionReceipt",
    "StatusReport",
    "ResultFile",
    "ValidationReport",
    "SubmissionGateway",
    "StatusQuery",
    "ResultFetch",
    "Validator",
    "SpeechServiceClient",
    "RequestValidator",
]
