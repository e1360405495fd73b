"""Exit codes for the llm-runtime CLI.

Exit Code Meanings:
- 0: Success
- 1: General Error - unexpected failures
- 2: Configuration Error - provider missing credentials or unknown
- 3: Provider Error - a provider is unreachable or unhealthy
- 4: Invalid Input - unreadable or malformed input file

Usage:
    from llm_runtime import exit_codes

    sys.exit(exit_codes.CONFIGURATION_ERROR)
"""

__all__ = [
    "SUCCESS",
    "GENERAL_ERROR",
    "CONFIGURATION_ERROR",
    "PROVIDER_ERROR",
    "INVALID_INPUT",
    "EXIT_CODE_NAMES",
    "get_exit_code_name",
]

SUCCESS = 0
GENERAL_ERROR = 1
CONFIGURATION_ERROR = 2
PROVIDER_ERROR = 3
INVALID_INPUT = 4

EXIT_CODE_NAMES = {
    SUCCESS: "SUCCESS",
    GENERAL_ERROR: "GENERAL_ERROR",
    CONFIGURATION_ERROR: "CONFIGURATION_ERROR",
    PROVIDER_ERROR: "PROVIDER_ERROR",
    INVALID_INPUT: "INVALID_INPUT",
}


def get_exit_code_name(code: int) -> str:
    """Get the name of an exit code, or "UNKNOWN (code)" if not recognized."""
    return EXIT_CODE_NAMES.get(code, f"UNKNOWN ({code})")
