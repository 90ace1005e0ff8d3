"""Validated manager options parsed from owner-supplied mappings."""

import os
import pathlib
import urllib.parse
import urllib.request
from collections.abc import Mapping


class TelemetryConfig:
    """Telemetry settings forwarded to the child's telemetry hook."""

    service_name: str
    enabled: bool | None
    extra: dict[str, object]

    def __init__(self, service_name: str, enabled: bool | None = None, extra: dict[str, object] | None = None) -> None:
        """Initialize telemetry settings.

        :param service_name: Service name reported by the child.
        :param enabled: Explicit enable flag, ``None`` when omitted.
        :param extra: Additional keys passed through verbatim.
        """
        self.service_name = service_name
        self.enabled = enabled
        if extra is None:
            self.extra = {}
        else:
            self.extra = dict(extra)

    @property
    def is_enabled(self) -> bool:
        """Report whether the telemetry hook should be injected.

        An omitted ``enabled`` flag counts as enabled.

        :returns: ``False`` only when ``enabled`` is explicitly ``False``.
        """
        return self.enabled is not False

    def to_dict(self) -> dict[str, object]:
        """Return the wire form used in the child environment.

        :returns: JSON-compatible mapping.
        """
        result: dict[str, object] = dict(self.extra)
        result["serviceName"] = self.service_name
        if self.enabled is not None:
            result["enabled"] = self.enabled
        return result


class ManagerOptions:
    """Normalized ``ChildManager`` construction options."""

    loader_url: str | None
    telemetry: TelemetryConfig | None

    def __init__(self, loader_url: str | None = None, telemetry: TelemetryConfig | None = None) -> None:
        """Initialize options.

        :param loader_url: Canonical ``file://`` URL of the loader module.
        :param telemetry: Telemetry settings, when configured.
        """
        self.loader_url = loader_url
        self.telemetry = telemetry


def path_to_url(location: str | os.PathLike[str]) -> str:
    """Canonicalize a filesystem path or ``file://`` URL.

    :param location: Path, ``pathlib.Path`` or ``file://`` URL string.
    :returns: Absolute ``file://`` URL.
    :raises ValueError: If ``location`` is a URL with a non-file scheme.
    """
    raw: str = os.fspath(location)
    parsed: urllib.parse.ParseResult = urllib.parse.urlparse(raw)
    is_url: bool = len(parsed.scheme) > 1
    if is_url is True:
        if parsed.scheme != "file":
            raise ValueError(f"Loader URL must use the file scheme, got {parsed.scheme!r}")
        raw = url_to_path(raw)
    resolved: pathlib.Path = pathlib.Path(raw).resolve()
    return resolved.as_uri()


def url_to_path(url: str) -> str:
    """Convert a ``file://`` URL back into a local path.

    Plain paths are returned unchanged.

    :param url: ``file://`` URL or local path.
    :returns: Local filesystem path.
    """
    parsed: urllib.parse.ParseResult = urllib.parse.urlparse(url)
    if parsed.scheme != "file":
        return url
    netloc: str = parsed.netloc
    location: str = urllib.request.url2pathname(parsed.path)
    if len(netloc) > 0 and netloc != "localhost":
        location = f"//{netloc}{location}"
    return location


def parse_telemetry_config(raw: object) -> TelemetryConfig:
    """Validate one ``telemetryConfig`` mapping.

    :param raw: Candidate mapping.
    :returns: Parsed telemetry settings.
    :raises ValueError: If the mapping shape is invalid.
    """
    if isinstance(raw, Mapping) is False:
        raise ValueError("telemetryConfig must be a mapping")

    service_name: object = raw.get("serviceName")
    if isinstance(service_name, str) is False or len(service_name) == 0:
        raise ValueError("telemetryConfig.serviceName must be a non-empty string")

    enabled: object = raw.get("enabled")
    if enabled is not None and isinstance(enabled, bool) is False:
        raise ValueError("telemetryConfig.enabled must be a bool")

    extra: dict[str, object] = {}
    for key, value in raw.items():
        if key in ("serviceName", "enabled"):
            continue
        extra[key] = value
    return TelemetryConfig(service_name, enabled=enabled, extra=extra)


def parse_manager_options(
    loader: str | os.PathLike[str] | None = None,
    context: Mapping[str, object] | None = None,
) -> ManagerOptions:
    """Validate and normalize ``ChildManager`` options.

    :param loader: Optional loader module location.
    :param context: Optional context mapping, may carry ``telemetryConfig``.
    :returns: Normalized options.
    :raises ValueError: If any option is invalid.
    """
    loader_url: str | None = None
    if loader is not None:
        loader_url = path_to_url(loader)

    telemetry: TelemetryConfig | None = None
    if context is not None:
        if isinstance(context, Mapping) is False:
            raise ValueError("context must be a mapping")
        raw_telemetry: object = context.get("telemetryConfig")
        if raw_telemetry is not None:
            telemetry = parse_telemetry_config(raw_telemetry)

    return ManagerOptions(loader_url=loader_url, telemetry=telemetry)
