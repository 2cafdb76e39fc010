"""Configuration endpoints."""

import json
from typing import Any

from fastapi import APIRouter

from tinderbox.config import get_settings, print_settings_json

router = APIRouter()


@router.get("")
def get_config() -> dict[str, Any]:
    """Effective settings, with the target password left out.

    Returns:
        Current configuration as JSON.
    """
    data: dict[str, Any] = json.loads(print_settings_json(get_settings()))
    return data
