"""
Canonical cache keys for transformation requests.

Keys have the form ``img_<imageId>_<base64(canonical-json(spec))>``. The JSON
is written with keys sorted at every nesting level and absent fields omitted,
so two specs with the same field/value pairs always share a key.
"""

import base64
import json
import re
from typing import Union, Dict, Any

from src.modules.imagery.schemas import TransformationSpec, parse_spec

KEY_PREFIX = "img_"

_BASE64_BODY = re.compile(r"^[A-Za-z0-9+/]+={0,2}$")


def canonical_json(spec: Union[TransformationSpec, Dict[str, Any], None]) -> str:
    payload = parse_spec(spec).to_payload()
    return json.dumps(payload, sort_keys=True, separators=(",", ":"), ensure_ascii=False)


def image_key_prefix(image_id: str) -> str:
    return f"{KEY_PREFIX}{image_id}_"


def canonical_key(image_id: str, spec: Union[TransformationSpec, Dict[str, Any], None]) -> str:
    encoded = base64.b64encode(canonical_json(spec).encode("utf-8")).decode("ascii")
    return f"{image_key_prefix(image_id)}{encoded}"


def key_belongs_to_image(key: str, image_id: str) -> bool:
    """True if key was derived for exactly this image id.

    The base64 alphabet has no underscore, so ``img_a_`` never claims keys of
    image ``a_b``.
    """
    prefix = image_key_prefix(image_id)
    if not key.startswith(prefix):
        return False
    return bool(_BASE64_BODY.match(key[len(prefix):]))
