"""
Services — package re-exports.

    transport  HTTP with retries
    resolver   source → asset
    archive    payload → executable
    engine     install / update / rollback / uninstall
"""

from blindspot.core.services.archive import classify, inspect_and_extract  # noqa: F401
from blindspot.core.services.engine import Engine, build_engine  # noqa: F401
from blindspot.core.services.resolver import (  # noqa: F401
    SourceResolver,
    parse_github_reference,
    suggest_name,
)
from blindspot.core.services.transport import HttpTransport, RetryPolicy  # noqa: F401
