class BugReportError(Exception):
    """
    Base class for every error raised by the bug-report engine.
    """


class MalformedIdentifier(BugReportError, ValueError):
    def __init__(self, raw: str):
        self.raw = raw
        super().__init__(f"'{raw}' is not of the form <namespace>/<name>")


class ClusterQueryFailure(BugReportError):
    """
    A single cluster call failed. Recoverable: recorded, never fatal.
    """

    def __init__(self, command: str, reason: str):
        self.command = command
        self.reason = reason
        super().__init__(f"{command}: {reason}")


class DuplicateEntry(BugReportError):
    def __init__(self, path: str):
        self.path = path
        super().__init__(f"Duplicate archive entry: {path}")


class ArchiveClosed(BugReportError):
    def __init__(self, path: str):
        self.path = path
        super().__init__(f"Archive {path} is already closed")


class ArchiveIOFailure(BugReportError):
    def __init__(self, path: str, reason: str):
        self.path = path
        self.reason = reason
        super().__init__(f"Unable to write archive {path}: {reason}")


class UnsupportedFormat(BugReportError):
    def __init__(self, path: str, fmt: str):
        self.path = path
        self.format = fmt
        super().__init__(
            f"Archive format '{fmt}' can be opened but not written ({path})"
        )


class NoTargetsResolved(BugReportError):
    def __init__(self, reason: str = "No targets resolved"):
        super().__init__(reason)
