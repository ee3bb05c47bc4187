from fastapi import status


class SimulationServiceError(Exception):
    status_code = status.HTTP_500_INTERNAL_SERVER_ERROR

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class Unauthorized(SimulationServiceError):
    status_code = status.HTTP_401_UNAUTHORIZED


class BadRequest(SimulationServiceError):
    status_code = status.HTTP_400_BAD_REQUEST


class EmptyTranscriptError(BadRequest):
    pass


class NotFound(SimulationServiceError):
    status_code = status.HTTP_404_NOT_FOUND


class ProviderError(SimulationServiceError):
    status_code = status.HTTP_502_BAD_GATEWAY


class ConfigError(SimulationServiceError):
    status_code = status.HTTP_503_SERVICE_UNAVAILABLE
