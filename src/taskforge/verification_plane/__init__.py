"""Validator execution, output parsing, and issue signatures."""

from taskforge.verification_plane.command import CommandResult, run_shell_command
from taskforge.verification_plane.parsers import get_parser, register_parser, registered_parsers
from taskforge.verification_plane.runner import ValidatorResult, ValidatorRunner, extract_issues
from taskforge.verification_plane.signatures import (
    SignatureHistory,
    issue_signature,
    signature_set,
)

__all__ = [
    "CommandResult",
    "SignatureHistory",
    "ValidatorResult",
    "ValidatorRunner",
    "extract_issues",
    "get_parser",
    "issue_signature",
    "register_parser",
    "registered_parsers",
    "run_shell_command",
    "signature_set",
]
