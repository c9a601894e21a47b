"""Image-to-video generation client: async submission and status polling."""

from i2v_client.client import I2VClient, SubmitResult
from i2v_client.credentials import CredentialStore, FileCredentialStore, MemoryCredentialStore
from i2v_client.errors import (
    GenerationError,
    MalformedResponseError,
    PollingTimeoutError,
    ServiceError,
    TransportError,
    ValidationError,
)
from i2v_client.models import GenerationRequest, GenerationTask, ModelVariant, TaskStatus
from i2v_client.orchestrator import GenerationOrchestrator, GenerationParams, GenerationState, Phase
from i2v_client.urls import normalize_source_url

__all__ = [
    "I2VClient",
    "SubmitResult",
    "CredentialStore",
    "FileCredentialStore",
    "MemoryCredentialStore",
    "GenerationError",
    "MalformedResponseError",
    "PollingTimeoutError",
    "ServiceError",
    "TransportError",
    "ValidationError",
    "GenerationRequest",
    "GenerationTask",
    "ModelVariant",
    "TaskStatus",
    "GenerationOrchestrator",
    "GenerationParams",
    "GenerationState",
    "Phase",
    "normalize_source_url",
]
