"""Build-time metadata for the gateway."""

_VERSION = "dev"
_GIT_SHA = "unknown"
_BUILD_TIMESTAMP = "unknown"


def version() -> str:
    """Return the semantic version set at build time."""
    return _VERSION


def git_sha() -> str:
    """Return the git commit the package was built from."""
    return _GIT_SHA


def build_timestamp() -> str:
    """Return the RFC3339 build timestamp."""
    return _BUILD_TIMESTAMP