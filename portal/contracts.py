# portal/contracts.py
from __future__ import annotations
import math
from typing import Any, Tuple

PreprocessOps = {"rotate", "crop", "auto_crop", "contrast", "optimize"}


def _is_intlike(x: Any) -> bool:
    if isinstance(x, bool):
        return False
    try:
        return int(x) == float(x)
    except (TypeError, ValueError, OverflowError):
        # OverflowError: JSON Infinity
        return False


def _is_number(x: Any) -> bool:
    return isinstance(x, (int, float)) and not isinstance(x, bool) and math.isfinite(x)


def _is_str_list(x: Any) -> bool:
    return isinstance(x, list) and all(isinstance(v, (str, dict)) for v in x)


def validate_analyze_payload(payload: Any) -> Tuple[bool, str]:
    if not isinstance(payload, dict):
        return False, "body must be a JSON object"

    image = payload.get("image")
    if image is not None and not isinstance(image, str):
        return False, "image must be a base64 data URI string"

    language = payload.get("language")
    if language is not None and not isinstance(language, str):
        return False, "language must be a string"

    ctx = payload.get("user_context")
    if ctx is not None:
        if not isinstance(ctx, dict):
            return False, "user_context must be an object"
        if "allergies" in ctx and not _is_str_list(ctx["allergies"]):
            return False, "user_context.allergies must be a list"
        if "diets" in ctx and not (isinstance(ctx["diets"], list) and all(isinstance(d, str) for d in ctx["diets"])):
            return False, "user_context.diets must be a list of strings"

    device = payload.get("device_info")
    if device is not None and not isinstance(device, dict):
        return False, "device_info must be an object"

    return True, ""


def validate_preprocess_payload(payload: Any) -> Tuple[bool, str]:
    if not isinstance(payload, dict):
        return False, "body must be a JSON object"
    ops = payload.get("operations", [])
    if not isinstance(ops, list):
        return False, "operations must be a list"
    for i, op in enumerate(ops):
        if not isinstance(op, dict):
            return False, f"operations[{i}] must be an object"
        name = op.get("op")
        if name not in PreprocessOps:
            return False, f"operations[{i}].op must be one of {', '.join(sorted(PreprocessOps))}"
        if name == "rotate" and "degrees" in op and not _is_intlike(op["degrees"]):
            return False, f"operations[{i}].degrees must be an integer"
        if name == "crop":
            for k in ("x", "y", "width", "height"):
                if not _is_intlike(op.get(k)):
                    return False, f"operations[{i}].{k} must be an integer"
        if name == "contrast" and not _is_number(op.get("value")):
            return False, f"operations[{i}].value must be a number"
    return True, ""
