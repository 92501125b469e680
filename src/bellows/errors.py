class BellowsError(Exception):
    pass


class NotFoundError(BellowsError):
    pass


class InvalidStateError(BellowsError):
    pass


class AgentNotFoundError(BellowsError):
    pass


class PermissionDeniedError(BellowsError):
    def __init__(self, permission: str, pattern: str | None = None):
        self.permission = permission
        self.pattern = pattern
        target = f" for {pattern}" if pattern else ""
        super().__init__(f"Permission denied: {permission}{target}")
