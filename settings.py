"""
Runtime configuration for PFP Forge.

Values are module-level constants; the ones that differ between local runs
and deployments can be overridden through environment variables.
"""

import logging
import os
from pathlib import Path

BASE_DIR = Path(__file__).resolve().parent

# Prefer PVC-backed /data when mounted so finished archives survive restarts.
if os.environ.get('PFP_OUTPUT_DIR'):
    OUTPUT_DIR = Path(os.environ['PFP_OUTPUT_DIR'])
elif os.path.exists('/data'):
    OUTPUT_DIR = Path('/data') / 'collections'
else:
    OUTPUT_DIR = BASE_DIR / 'generated'

TRAITS_CATALOG = Path(os.environ.get('PFP_TRAITS_CATALOG', BASE_DIR / 'pfp-traits' / 'catalog.json'))
TRAITS_ROOT = Path(os.environ.get('PFP_TRAITS_ROOT', BASE_DIR / 'pfp-traits'))

LOG_LEVEL = os.environ.get('PFP_LOG_LEVEL', 'INFO').upper()
LOG_FORMAT = '%(asctime)s %(levelname)s [%(threadName)s] %(name)s: %(message)s'

# --- Rendering defaults ---
DEFAULT_WIDTH = 1024
DEFAULT_HEIGHT = 1024
MAX_DIMENSION = 4096
DEFAULT_FORMAT = 'png'
SUPPORTED_FORMATS = ('png', 'jpeg', 'webp')
DEFAULT_QUALITY = 95

# --- Collection limits ---
MAX_COLLECTION_SIZE = 10_000
MAX_ATTEMPTS_PER_TOKEN = 1000
# Spaces at or below this size are enumerated when a request is dense.
EXHAUSTIVE_SPACE_LIMIT = 200_000

# --- Batch orchestration ---
# Small batches keep at most a handful of decoded bitmaps alive at once.
DEFAULT_BATCH_SIZE = 3
DEFAULT_WORKERS = int(os.environ.get('PFP_WORKERS', 1))
MAX_WORKERS = 8
LAYER_TIMEOUT_SECONDS = 10.0
YIELD_SECONDS = 0.01
ARCHIVE_COMPRESSLEVEL = 6

# --- Job queue ---
QUEUE_WORKERS = 2
RESULT_TTL = int(os.environ.get('PFP_RESULT_TTL', 3600))

PORT = int(os.environ.get('PORT', 5000))


def configure_logging(level: str = LOG_LEVEL) -> None:
    """Configure root logging once for CLI and server entry points."""
    logging.basicConfig(level=getattr(logging, level, logging.INFO), format=LOG_FORMAT)


def ensure_output_dir() -> Path:
    OUTPUT_DIR.mkdir(parents=True, exist_ok=True)
    return OUTPUT_DIR
