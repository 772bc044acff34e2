from roundcrank.runtime.crank_runtime import CrankRuntime
from roundcrank.runtime.retention_policy import RetentionPolicy, apply_retention

__all__ = [
    "CrankRuntime",
    "RetentionPolicy",
    "apply_retention",
]
