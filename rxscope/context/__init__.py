"""
RxScope Context Package
=======================

The context stack trio consulted by constructors to attribute new streams.
"""

from .stacks import (
    Attribution,
    CompositionFrame,
    ContextStack,
    ContextStacks,
    StackDepths,
    SubscriptionFrame,
    TransformFrame,
)

__all__ = [
    "Attribution",
    "CompositionFrame",
    "ContextStack",
    "ContextStacks",
    "StackDepths",
    "SubscriptionFrame",
    "TransformFrame",
]
