"""
Adapter between rxscope and reactivex.

``install()`` hooks ``reactivex.Observable``; ``rxscope.rx.operators`` holds
tracked operator factories and combinators.
"""

from . import operators
from .operators import track_combinator, track_operator, transform_callback
from .patch import TrackedDisposable, install, is_installed, uninstall

__all__ = [
    "TrackedDisposable",
    "install",
    "is_installed",
    "operators",
    "track_combinator",
    "track_operator",
    "transform_callback",
    "uninstall",
]
