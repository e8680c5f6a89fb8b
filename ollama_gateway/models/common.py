"""Shared field types for the gateway's request schemas."""
from __future__ import annotations

import re
from typing import Annotated

from pydantic import AfterValidator

# Control characters other than tab, newline and carriage return.
_CONTROL_CHARACTERS = re.compile(r"[\x00-\x08\x0B\x0C\x0E-\x1F\x7F]")


def strip_control_characters(value: str) -> str:
    return _CONTROL_CHARACTERS.sub("", value)


CleanStr = Annotated[str, AfterValidator(strip_control_characters)]
