PARAMETER_COLLECTION_PROMPT = """\
To run {TOOL_NAME} I still need: {MISSING}.
{DETAILS}"""

PARAMETER_DETAIL_LINE = "- {NAME} ({TYPE}): {DESCRIPTION}"

CONFIRMATION_PROMPT = """\
Ready to run {TOOL_NAME} with:
{ARGUMENTS}
Reply with execute to confirm."""

FILTERS_SUGGESTION = (
    "This request would fetch every record. Provide filters to narrow it down, "
    "an identifier, or set all=true to fetch everything."
)

STEP_FAILED_MESSAGE = "Action '{TOOL_NAME}' failed: {ERROR}"

__all__ = [
    "PARAMETER_COLLECTION_PROMPT",
    "PARAMETER_DETAIL_LINE",
    "CONFIRMATION_PROMPT",
    "FILTERS_SUGGESTION",
    "STEP_FAILED_MESSAGE",
]
