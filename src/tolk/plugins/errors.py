"""Typed execution failures surfaced by the plugin runner.

Each error carries a stable ``kind`` so the delivery layer can explain
what happened without parsing messages.
"""

from __future__ import annotations


class PluginError(Exception):
    kind = "plugin_error"


class MissingFieldError(PluginError):
    kind = "missing_field"

    def __init__(self, field: str, plugin_id: str = "") -> None:
        self.field = field
        self.plugin_id = plugin_id
        where = f" in plugin '{plugin_id}'" if plugin_id else ""
        super().__init__(f"Missing required field '{field}'{where}")


class PluginTimeoutError(PluginError):
    kind = "timeout"

    def __init__(self, timeout: float) -> None:
        self.timeout = timeout
        super().__init__(f"Plugin timed out after {timeout:g}s")


class ScriptFailedError(PluginError):
    kind = "non_zero_exit"

    def __init__(self, code: int, stdout: str = "", stderr: str = "") -> None:
        self.code = code
        self.stdout = stdout
        self.stderr = stderr
        detail = (stderr or stdout).strip()[:500]
        message = f"Script exited with code {code}"
        if detail:
            message = f"{message}: {detail}"
        super().__init__(message)


class HTTPStatusError(PluginError):
    kind = "http_status"

    def __init__(self, status_code: int, body: str = "") -> None:
        self.status_code = status_code
        self.body = body[:500]
        super().__init__(f"HTTP {status_code}: {self.body}")


class InvalidResponseError(PluginError):
    kind = "malformed_response"


class PipelinePluginNotFoundError(PluginError):
    kind = "pipeline_target_missing"

    def __init__(self, plugin_id: str) -> None:
        self.plugin_id = plugin_id
        super().__init__(f"Pipeline step plugin not found: {plugin_id}")


class PipelineDepthError(PluginError):
    kind = "pipeline_depth"

    def __init__(self, depth: int) -> None:
        self.depth = depth
        super().__init__(f"Pipeline nesting exceeded {depth} levels (circular pipeline?)")


class PermissionDeniedError(PluginError):
    kind = "permission_denied"

    def __init__(self, permission: str, plugin_id: str = "") -> None:
        self.permission = permission
        self.plugin_id = plugin_id
        who = f"Plugin '{plugin_id}'" if plugin_id else "Plugin"
        super().__init__(f"{who} is not allowed to use '{permission}'")


class ProcessLaunchError(PluginError):
    kind = "cannot_execute"

    def __init__(self, command: str, reason: str) -> None:
        self.command = command
        self.reason = reason
        super().__init__(f"Cannot execute {command}: {reason}")


class PluginConnectionError(PluginError):
    kind = "connection_error"

    def __init__(self, url: str, reason: str) -> None:
        self.url = url
        self.reason = reason
        super().__init__(f"Request to {url} failed: {reason}")
