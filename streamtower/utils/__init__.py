"""Utility helpers shared across modules."""

from .config import (  # noqa: F401
    TEST_MODE_OVERRIDES,
    ConfigurationError,
    apply_overrides,
    apply_test_mode,
    clone_config,
    get_by_dotted_path,
    load_config,
    set_by_dotted_path,
)
from .logs import configure_logging  # noqa: F401
