from __future__ import annotations


class ControllerError(Exception):
    pass


class ConfigError(ControllerError, ValueError):
    pass


class PollTimeoutError(ControllerError):
    """A bounded polling loop gave up before its condition held."""


class LaunchError(ControllerError):
    """The compute backend accepted a run request but returned no instance."""


class NotFoundError(ControllerError):
    """A delete-style operation targeted a resource that does not exist."""
