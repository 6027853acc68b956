from typing import Optional


class RoverLinkError(Exception):
    """Base class for failures surfaced by the rover link."""


class ConnectionFailed(RoverLinkError):
    """The bridge socket could not be opened or errored while opening."""


class NotConnected(RoverLinkError):
    """A command was attempted without a live bridge session."""


class NodesNotReady(RoverLinkError):
    """The readiness gate timed out or saw a required node in error."""

    def __init__(self, required_nodes, reason: str = "required nodes not running"):
        self.required_nodes = list(required_nodes)
        self.reason = reason
        super().__init__(f"{reason}: {', '.join(self.required_nodes)}")


class SignalingFailed(RoverLinkError):
    """A camera signaling channel failed. Never fatal to other channels."""

    def __init__(self, channel_id: str, reason: str):
        self.channel_id = channel_id
        self.reason = reason
        super().__init__(f"[{channel_id}] {reason}")


class UploadFailed(RoverLinkError):
    """A push to the logging or heartbeat-persistence endpoint failed."""

    def __init__(self, path: str, status_code: Optional[int] = None, detail: str = ""):
        self.path = path
        self.status_code = status_code
        self.detail = detail
        msg = f"upload to {path} failed"
        if status_code is not None:
            msg += f" (HTTP {status_code})"
        if detail:
            msg += f": {detail}"
        super().__init__(msg)
