class BridgeError(Exception):
    """Base class for everything the bridge raises on purpose."""


class BrowserUnavailable(BridgeError):
    """No browser could be attached to or launched."""


class BrowserDisconnected(BrowserUnavailable):
    """The browser connection dropped or stopped answering mid-operation."""


class CDPError(BridgeError):
    """The browser answered a CDP command with an error."""

    def __init__(self, method: str, error: dict):
        self.method = method
        self.error = error
        super().__init__(f"CDP error for {method}: {error.get('message', error)}")


class NavigationTimeout(BridgeError):
    """The target page did not settle in time."""


class InputTimeout(BridgeError):
    """No input surface appeared on the page in time."""


class ResponseTimeout(BridgeError):
    """The site's completion response did not arrive (or stalled) in time."""


class ResponseFailed(BridgeError):
    """The browser reported the completion request as failed mid-flight."""


class DecodeError(BridgeError):
    """A single line of the internal event stream could not be decoded."""


class ToolParseError(BridgeError):
    """A fenced tool-call block was found but its body is not a valid call."""


class LoginTimeout(BridgeError):
    """No authentication cookie appeared before polling gave up."""


class LoginCancelled(BridgeError):
    """The login flow was aborted through its cancel token."""
