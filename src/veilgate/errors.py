"""Exception types raised by Veilgate."""

from __future__ import annotations


class VeilgateError(Exception):
    """Base class for all Veilgate errors."""


class ConfigError(VeilgateError):
    """The configuration cannot be used to start the service.

    Raised at startup, never while serving requests.
    """


class MissingFieldError(VeilgateError):
    """A verification or challenge request omitted a required field."""

    def __init__(self, fields: list[str]) -> None:
        self.fields = fields
        super().__init__(f"Missing required data: {', '.join(fields)}")
