"""
Request validation for the PFP Forge HTTP API.

Covers:
1. Collection size / resolution / format limits
2. Rate limiting
3. URI and text sanitization
4. Job id validation (prevents path traversal into the output directory)
"""

import logging
import re
from typing import Any, Dict, Optional, Tuple
from urllib.parse import urlparse

from flask import jsonify, request
from flask_limiter import Limiter
from flask_limiter.util import get_remote_address

from settings import (
    DEFAULT_FORMAT,
    DEFAULT_HEIGHT,
    DEFAULT_QUALITY,
    DEFAULT_WIDTH,
    MAX_COLLECTION_SIZE,
    MAX_DIMENSION,
    MAX_WORKERS,
    SUPPORTED_FORMATS,
)

logger = logging.getLogger(__name__)

# Rate limiting configuration
SUBMIT_RATE_LIMIT = "10 per minute"
PREVIEW_RATE_LIMIT = "60 per minute"
DOWNLOAD_RATE_LIMIT = "100 per minute"

MAX_TEXT_LENGTH = 2000
ALLOWED_URI_SCHEMES = {'ipfs', 'ar', 'https', 'http'}


def create_limiter(app):
    """Create and configure rate limiter."""
    return Limiter(
        key_func=get_remote_address,
        app=app,
        default_limits=["1000 per hour"]
    )


def validate_int_parameter(value, param_name: str, min_val: int, max_val: int, default: Optional[int] = None) -> int:
    """
    Validate an integer parameter.

    Raises:
        ValueError: If the value is missing (and no default) or out of range
    """
    if value is None or value == "":
        if default is None:
            raise ValueError(f"Missing {param_name}")
        return default
    try:
        num_val = int(value)
    except (TypeError, ValueError):
        raise ValueError(f"{param_name} must be an integer")
    if isinstance(value, float) and value != num_val:
        raise ValueError(f"{param_name} must be an integer")
    if not (min_val <= num_val <= max_val):
        raise ValueError(f"{param_name} must be between {min_val} and {max_val}")
    return num_val


def validate_format(image_format: Optional[str]) -> str:
    if not image_format:
        return DEFAULT_FORMAT
    image_format = str(image_format).strip().lower()
    if image_format == 'jpg':
        image_format = 'jpeg'
    if image_format not in SUPPORTED_FORMATS:
        raise ValueError(f"Unsupported format: {image_format}. Allowed: {', '.join(SUPPORTED_FORMATS)}")
    return image_format


def validate_uri(uri: Optional[str], param_name: str, required: bool = True) -> str:
    """Accept ipfs://, ar:// and http(s) URIs only."""
    if not uri:
        if required:
            raise ValueError(f"Missing {param_name}")
        return ""
    if not isinstance(uri, str) or len(uri) > MAX_TEXT_LENGTH:
        raise ValueError(f"Invalid {param_name}")
    uri = uri.strip()
    parsed = urlparse(uri)
    if parsed.scheme.lower() not in ALLOWED_URI_SCHEMES:
        raise ValueError(f"{param_name} must use one of: {', '.join(sorted(ALLOWED_URI_SCHEMES))}")
    if not parsed.netloc and not parsed.path:
        raise ValueError(f"Invalid {param_name}")
    if any(ch in uri for ch in ('\n', '\r', ' ')):
        raise ValueError(f"{param_name} must not contain whitespace")
    return uri


def validate_text(value: Optional[str], param_name: str, required: bool = True) -> str:
    if value is None or (isinstance(value, str) and not value.strip()):
        if required:
            raise ValueError(f"Missing {param_name}")
        return ""
    if not isinstance(value, str):
        raise ValueError(f"{param_name} must be a string")
    value = value.strip()
    if len(value) > MAX_TEXT_LENGTH:
        raise ValueError(f"{param_name} is too long (max {MAX_TEXT_LENGTH} characters)")
    return value


def validate_job_id(job_id: str) -> bool:
    """
    Validate job id format to prevent path traversal attacks.

    Returns:
        True if valid, False otherwise
    """
    if not job_id or not isinstance(job_id, str):
        return False
    return re.match(r'^[a-f0-9]{32}$', job_id) is not None


def validate_exclude_categories(value, known_categories) -> Tuple[str, ...]:
    if value is None:
        return ()
    if isinstance(value, str):
        value = [v for v in value.split(',') if v.strip()]
    if not isinstance(value, (list, tuple)):
        raise ValueError("exclude_categories must be a list")
    categories = tuple(str(v).strip() for v in value)
    unknown = [c for c in categories if c not in known_categories]
    if unknown:
        raise ValueError(f"Unknown categories: {', '.join(unknown)}")
    return categories


def validate_collection_params(data: Dict[str, Any], known_categories) -> Dict[str, Any]:
    """
    Validate and normalise the body of a collection request.

    Returns:
        Dict of cleaned parameters ready for the job queue

    Raises:
        ValueError: On the first invalid field
    """
    if not isinstance(data, dict):
        raise ValueError("Request body must be a JSON object")

    silhouette = bool(data.get('silhouette', False))
    seed = data.get('seed')
    if seed is not None:
        seed = validate_int_parameter(seed, 'seed', 0, 2 ** 63 - 1)

    return {
        'size': validate_int_parameter(data.get('size'), 'size', 1, MAX_COLLECTION_SIZE),
        'width': validate_int_parameter(data.get('width'), 'width', 16, MAX_DIMENSION, DEFAULT_WIDTH),
        'height': validate_int_parameter(data.get('height'), 'height', 16, MAX_DIMENSION, DEFAULT_HEIGHT),
        'format': validate_format(data.get('format')),
        'quality': validate_int_parameter(data.get('quality'), 'quality', 1, 100, DEFAULT_QUALITY),
        'name': validate_text(data.get('name'), 'name'),
        'description': validate_text(data.get('description'), 'description', required=False),
        'media_base_uri': validate_uri(data.get('media_base_uri'), 'media_base_uri'),
        'external_uri': validate_uri(data.get('external_uri'), 'external_uri', required=False),
        'silhouette': silhouette,
        'shadow_metadata': bool(data.get('shadow_metadata', False)),
        'exclude_categories': validate_exclude_categories(data.get('exclude_categories'), known_categories),
        'seed': seed,
        'workers': validate_int_parameter(data.get('workers'), 'workers', 1, MAX_WORKERS, 1),
    }


def log_security_event(event_type: str, details: str, ip_address: str = None):
    """Log security-related events for monitoring."""
    if not ip_address:
        ip_address = request.remote_addr if request else 'unknown'
    logger.warning(f"SECURITY_EVENT {event_type} from {ip_address}: {details}")


def handle_validation_error(error_message: str, status_code: int = 400):
    """
    Handle validation errors consistently.

    Returns:
        JSON error response
    """
    log_security_event("VALIDATION_ERROR", error_message)
    return jsonify({
        'status': 'error',
        'error': error_message,
        'code': 'VALIDATION_ERROR'
    }), status_code
