"""External tool integrations: process runner, subagents, git, and verification checks."""

from .gates import VerificationCheck, VerificationFailure, VerificationReport, normalise_checks, run_verification
from .invocation import FailureKind, ToolInvocation, ToolInvocationError, ToolOutcome, ToolRunner
from .subagents import SUBAGENTS, SubagentFlagError, SubagentLauncher, SubagentRequest
from .vcs import GitCheckpoint, GitError, GitRepository

__all__ = [
    "FailureKind",
    "GitCheckpoint",
    "GitError",
    "GitRepository",
    "SUBAGENTS",
    "SubagentFlagError",
    "SubagentLauncher",
    "SubagentRequest",
    "ToolInvocation",
    "ToolInvocationError",
    "ToolOutcome",
    "ToolRunner",
    "VerificationCheck",
    "VerificationFailure",
    "VerificationReport",
    "normalise_checks",
    "run_verification",
]
