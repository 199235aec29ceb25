"""Variable reference scanning over instruction params."""

from __future__ import annotations

import re
from typing import Any

from planforge.plan import STEP_RESULT_FIELDS, OpCode

# `${id.field}` with ids that may contain dashes
REF_WITH_ID_RE = re.compile(r"\$\{([a-zA-Z0-9_-]+)\.([a-zA-Z0-9_]+)\}")
# word-only ids, used when validating field names
REF_FIELD_RE = re.compile(r"\$\{(\w+)\.(\w+)\}")

CONTEXT_OPS = frozenset(
    {OpCode.SEARCH_CODE, OpCode.SEARCH_SEMANTIC, OpCode.READ_FILES, OpCode.GET_DEPENDENCIES}
)
EXECUTION_OPS = frozenset({OpCode.EDIT_CODE, OpCode.RUN_COMMAND})


def has_variable_ref(params_text: str) -> bool:
    if "${" not in params_text:
        return False
    return any(f".{name}" in params_text for name in STEP_RESULT_FIELDS)


def is_variable_ref_value(value: Any) -> bool:
    return isinstance(value, str) and value.startswith("${") and "." in value and value.endswith("}")


def referenced_ids(params_text: str) -> list[str]:
    return [match.group(1) for match in REF_WITH_ID_RE.finditer(params_text)]
