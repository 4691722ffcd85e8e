from cadence.harness.args import ArgsError, apply_model_choice, contains_flag, split_args
from cadence.harness.base import Harness, HarnessError, HarnessProcessError, HarnessResult
from cadence.harness.process import CommandHarness, TailBuffer
from cadence.harness.retrying import (
    RetryingHarness,
    RetryPolicy,
    backoff_duration,
    matched_retry_token,
)

__all__ = [
    "ArgsError",
    "CommandHarness",
    "Harness",
    "HarnessError",
    "HarnessProcessError",
    "HarnessResult",
    "RetryPolicy",
    "RetryingHarness",
    "TailBuffer",
    "apply_model_choice",
    "backoff_duration",
    "contains_flag",
    "matched_retry_token",
    "split_args",
]
