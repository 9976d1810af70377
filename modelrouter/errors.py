from typing import Any, Optional


class RoutingError(Exception):
    """Base class for routing/execution failures."""


class UnknownModel(RoutingError):
    def __init__(self, model_id: str):
        super().__init__(f"unknown model: {model_id}")
        self.model_id = model_id


class CapabilityMismatch(RoutingError):
    def __init__(self, model_id: str, missing: list[str]):
        super().__init__(f"{model_id} lacks {', '.join(missing)}")
        self.model_id = model_id
        self.missing = missing


class TransportFailure(RoutingError):
    """A single inference call failed; retryable by the executor."""


class InferenceError(TransportFailure):
    def __init__(self, message: str, status: Optional[int] = None, detail: str = ""):
        super().__init__(message)
        self.status = status
        self.detail = detail


class InferenceTimeout(TransportFailure):
    pass


class AdmissionTimeout(InferenceTimeout):
    pass


class EmptyResponse(TransportFailure):
    def __init__(self, model_id: str):
        super().__init__(f"{model_id} returned an empty response")
        self.model_id = model_id


class IncapableResponse(RoutingError):
    def __init__(self, model_id: str, excerpt: str = ""):
        super().__init__(f"{model_id} cannot handle the input")
        self.model_id = model_id
        self.excerpt = excerpt


class StageFailure(RoutingError):
    """Unrecoverable failure of one workflow stage."""

    def __init__(
        self,
        step: str,
        model: str,
        attempts: int,
        last_error: Optional[BaseException] = None,
    ):
        detail = str(last_error) if last_error else "unknown error"
        super().__init__(f"stage '{step}' failed on {model} after {attempts} attempt(s): {detail}")
        self.step = step
        self.model = model
        self.attempts = attempts
        self.last_error = last_error
        self.partial: Optional[Any] = None
