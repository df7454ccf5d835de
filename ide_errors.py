"""Error taxonomy for the orchestrator.

Only client-initiated actions (switch, start, stop, reading the active
instance) raise these to callers. Discovery and health failures are turned
into health state and log lines instead.
"""
from __future__ import annotations

from typing import Any, Dict, Optional


class OrchestratorError(Exception):
    code = "orchestrator_error"
    http_status = 500

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None) -> None:
        super().__init__(message)
        self.message = message
        self.details = dict(details or {})

    def to_json(self) -> Dict[str, Any]:
        body: Dict[str, Any] = {"ok": False, "error": self.code, "message": self.message}
        if self.details:
            body["details"] = self.details
        return body


class InvalidRequest(OrchestratorError):
    code = "invalid_request"
    http_status = 400


class InstanceNotFound(OrchestratorError):
    code = "instance_not_found"
    http_status = 404


class NoInstanceAvailable(OrchestratorError):
    code = "no_instance_available"
    http_status = 409


class SwitchTimeout(OrchestratorError):
    code = "switch_timeout"
    http_status = 504


class LaunchFailed(OrchestratorError):
    code = "launch_failed"
    http_status = 502


class InstanceUnreachable(OrchestratorError):
    code = "instance_unreachable"
    http_status = 503


class DiscoveryTimeout(OrchestratorError):
    code = "discovery_timeout"


class PreferenceStoreCorrupt(OrchestratorError):
    code = "preference_store_corrupt"


class CacheWriteFailure(OrchestratorError):
    code = "cache_write_failure"


class DriverError(Exception):
    """Raised by instance drivers when a control channel cannot be opened."""
