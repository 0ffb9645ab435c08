"""
Caller location capture.

Walks the interpreter stack to the first frame that belongs to neither the
host reactive library nor rxscope itself: that frame is the user code that
built the stream.
"""

import sys
from typing import Optional, Tuple

from ..records import SourceLocation

INTERNAL_MODULES: Tuple[str, ...] = ("reactivex", "rxscope")


def _is_internal(module_name: str, internal: Tuple[str, ...]) -> bool:
    return any(
        module_name == prefix or module_name.startswith(prefix + ".")
        for prefix in internal
    )


def caller_location(
    skip: int = 1, internal: Tuple[str, ...] = INTERNAL_MODULES
) -> Optional[SourceLocation]:
    """
    Location of the nearest user frame.

    Args:
        skip: Frames to skip before searching (1 skips this function)
        internal: Module prefixes treated as library code

    Returns:
        SourceLocation, or None if every frame on the stack is internal
    """
    try:
        frame = sys._getframe(skip)
    except ValueError:
        return None
    while frame is not None:
        module_name = frame.f_globals.get("__name__", "")
        if not _is_internal(module_name, internal):
            code = frame.f_code
            return SourceLocation(code.co_filename, frame.f_lineno, code.co_name)
        frame = frame.f_back
    return None
