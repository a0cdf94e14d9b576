"""Failure types raised by the session manager and its collaborators."""


class PlaygroundError(Exception):
    pass


class InvalidOptionsError(PlaygroundError):
    """A session request carried options that cannot be used as given."""


class ResolutionError(PlaygroundError):
    """No concrete backend version could be determined."""


class InstallError(PlaygroundError):
    """A backend version could not be materialized in the artifact store."""


class InvalidVersionError(InstallError):
    pass


class SpawnError(PlaygroundError):
    """The worker process never reached the running state."""


class HandshakeError(PlaygroundError):
    """The worker started but did not complete the initialize exchange."""


class SessionNotFoundError(PlaygroundError):
    def __init__(self, session_id: str):
        super().__init__(f"Session {session_id} not found")
        self.session_id = session_id


class RequestCancelledError(PlaygroundError):
    """An in-flight protocol request was cancelled by session close."""


class WorkerConnectionClosed(PlaygroundError):
    """The worker's stream ended while a request was outstanding."""


class LanguageServerError(PlaygroundError):
    def __init__(self, code: int, message: str, data=None):
        super().__init__(f"Language server error {code}: {message}")
        self.code = code
        self.message = message
        self.data = data
