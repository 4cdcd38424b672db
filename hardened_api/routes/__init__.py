"""Route modules; main includes each router explicitly."""

from . import (
    greetings,  # noqa: F401
    health,  # noqa: F401
)
