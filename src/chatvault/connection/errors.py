"""Connection lifecycle errors."""


class ConnectionInProgressError(Exception):
    """connect() called while a connect is in flight with no session yet."""

    pass


class ConnectionFatalError(Exception):
    """Terminal connection condition; the manager will not reconnect."""

    pass


class LoggedOutError(ConnectionFatalError):
    """The account was logged out; re-authentication is required."""

    def __init__(self, status_code: int | None = None) -> None:
        super().__init__(
            f"logged out (status {status_code}); manual re-authentication required"
        )
        self.status_code = status_code


class ReconnectBudgetExhaustedError(ConnectionFatalError):
    """Every allowed reconnect attempt closed without reaching Open."""

    def __init__(self, attempts: int) -> None:
        super().__init__(f"giving up after {attempts} reconnect attempts")
        self.attempts = attempts
