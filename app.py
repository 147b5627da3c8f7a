"""
Flask application serving PFP Forge.

This web service generates profile-picture collections from a layered
trait catalog. A client submits a collection request, polls its progress,
and downloads one ZIP holding every token image (normal or silhouette) and
its metadata document. Runs execute on background workers so a request
thread is never blocked for the length of a render.

Running
-------
Point ``PFP_TRAITS_CATALOG`` at a catalog JSON file and ``PFP_TRAITS_ROOT``
at the folder holding the trait PNGs, then run:

    python app.py

Dependencies
------------
* flask – web server.
* flask-limiter – request rate limiting.
* pillow – layer compositing and encoding.
* numpy – silhouette thresholding.

"""

import io
import logging
import re
import uuid
from pathlib import Path
from typing import Any, Dict, Optional

from flask import Flask, jsonify, request, send_file

import settings
from batch_renderer import (
    CollectionRequest,
    RunResult,
    SleepYield,
    render_collection,
    render_preview,
)
from collection_archive import build_placeholder_metadata_archive
from errors import PfpForgeError
from image_loader import ImageResourceLoader
from metadata_builder import CollectionConfig
from queue_processor import ImageProcessor, JobContext, JobStatus
from request_validation import (
    DOWNLOAD_RATE_LIMIT,
    PREVIEW_RATE_LIMIT,
    SUBMIT_RATE_LIMIT,
    create_limiter,
    handle_validation_error,
    validate_collection_params,
    validate_int_parameter,
    validate_job_id,
    validate_uri,
)
from trait_catalog import TraitCatalog

logger = logging.getLogger(__name__)

app = Flask(__name__)
app.config.setdefault('TRAIT_CATALOG', None)
app.config.setdefault('IMAGE_LOADER', None)
app.config.setdefault('JOB_PROCESSOR', None)
app.config.setdefault('OUTPUT_DIR', settings.OUTPUT_DIR)

limiter = create_limiter(app)


@app.after_request
def set_csp_header(response):
    response.headers['Content-Security-Policy'] = "default-src 'none'; frame-ancestors 'none';"
    return response


# --- Collaborators ---------------------------------------------------------

def get_catalog() -> TraitCatalog:
    catalog = app.config.get('TRAIT_CATALOG')
    if catalog is None:
        catalog = TraitCatalog.from_json(settings.TRAITS_CATALOG)
        app.config['TRAIT_CATALOG'] = catalog
    return catalog


def get_loader() -> ImageResourceLoader:
    loader = app.config.get('IMAGE_LOADER')
    if loader is None:
        loader = ImageResourceLoader(settings.TRAITS_ROOT)
        app.config['IMAGE_LOADER'] = loader
    return loader


def get_output_dir() -> Path:
    output_dir = Path(app.config['OUTPUT_DIR'])
    output_dir.mkdir(parents=True, exist_ok=True)
    return output_dir


def get_job_processor() -> ImageProcessor:
    processor = app.config.get('JOB_PROCESSOR')
    if processor is None:
        processor = ImageProcessor(num_workers=settings.QUEUE_WORKERS, result_ttl=settings.RESULT_TTL)
        processor.register_processor('collection', run_collection_job)
        app.config['JOB_PROCESSOR'] = processor
    return processor


def configure_collaborators(catalog: Optional[TraitCatalog] = None, loader=None,
                            processor: Optional[ImageProcessor] = None, output_dir=None) -> None:
    """Swap in the catalog, loader, job processor or output folder used by the routes."""
    if catalog is not None:
        app.config['TRAIT_CATALOG'] = catalog
    if loader is not None:
        app.config['IMAGE_LOADER'] = loader
    if output_dir is not None:
        app.config['OUTPUT_DIR'] = Path(output_dir)
    if processor is not None:
        processor.register_processor('collection', run_collection_job)
        app.config['JOB_PROCESSOR'] = processor


# --- Job processing --------------------------------------------------------

def build_collection_request(params: Dict[str, Any], catalog: TraitCatalog) -> CollectionRequest:
    exclude = tuple(params.get('exclude_categories') or ())
    if params['silhouette'] and not exclude:
        # Backdrops are solid images and would turn a silhouette into a black square.
        exclude = tuple(catalog.backdrop_categories)

    config = CollectionConfig(
        name=params['name'],
        description=params['description'],
        media_base_uri=params['media_base_uri'],
        external_uri=params['external_uri'],
    )
    return CollectionRequest(
        size=params['size'],
        collection=config,
        width=params['width'],
        height=params['height'],
        image_format=params['format'],
        quality=params['quality'],
        silhouette=params['silhouette'],
        shadow_metadata=params.get('shadow_metadata', False),
        exclude_categories=exclude,
        seed=params.get('seed'),
        workers=params.get('workers', 1),
    )


def run_collection_job(params: Dict[str, Any], context: JobContext) -> Optional[RunResult]:
    """Queue processor for 'collection' jobs."""
    catalog = get_catalog()
    collection_request = build_collection_request(params, catalog)
    destination = get_output_dir() / f"{context.job_id}.zip"
    return render_collection(
        collection_request,
        catalog,
        get_loader(),
        destination,
        on_progress=context.report_progress,
        cancel_token=context.cancel_token,
        yield_point=SleepYield(settings.YIELD_SECONDS),
    )


def download_name_for(params: Dict[str, Any]) -> str:
    slug = re.sub(r'[^A-Za-z0-9]+', '-', params.get('name', 'collection')).strip('-') or 'collection'
    kind = 'Shadow-Collection' if params.get('silhouette') else 'Collection'
    return f"{slug}-{kind}-{params.get('size')}.zip"


# --- Routes ----------------------------------------------------------------

@app.route('/')
def index() -> Any:
    """Service info: catalog categories and rendering defaults."""
    try:
        catalog = get_catalog()
    except (OSError, ValueError) as e:
        logger.error(f"Trait catalog unavailable: {e}")
        return jsonify({'status': 'error', 'error': 'Trait catalog unavailable'}), 503

    return jsonify({
        'service': 'pfp-forge',
        'layer_order': catalog.layer_order(),
        'required_categories': sorted(catalog.required_categories),
        'backdrop_categories': list(catalog.backdrop_categories),
        'defaults': {
            'width': settings.DEFAULT_WIDTH,
            'height': settings.DEFAULT_HEIGHT,
            'format': settings.DEFAULT_FORMAT,
            'quality': settings.DEFAULT_QUALITY,
        },
        'formats': list(settings.SUPPORTED_FORMATS),
        'max_collection_size': settings.MAX_COLLECTION_SIZE,
    })


@app.route('/collections', methods=['POST'])
@limiter.limit(SUBMIT_RATE_LIMIT)
def submit_collection() -> Any:
    """Validate a collection request and queue it."""
    data = request.get_json(silent=True)
    try:
        params = validate_collection_params(data, set(get_catalog().layer_order()))
    except ValueError as e:
        return handle_validation_error(str(e))

    job_id = get_job_processor().submit_job('collection', params)
    return jsonify({
        'status': 'queued',
        'job_id': job_id,
        'position': get_job_processor().get_queue_position(job_id),
    }), 202


@app.route('/collections/<job_id>')
def collection_status(job_id: str) -> Any:
    if not validate_job_id(job_id):
        return handle_validation_error("Invalid job id")
    status = get_job_processor().get_job_status(job_id)
    if status is None:
        return jsonify({'status': 'error', 'error': 'Job not found'}), 404
    return jsonify(status)


@app.route('/collections/<job_id>/cancel', methods=['POST'])
def cancel_collection(job_id: str) -> Any:
    if not validate_job_id(job_id):
        return handle_validation_error("Invalid job id")
    processor = get_job_processor()
    if processor.get_job(job_id) is None:
        return jsonify({'status': 'error', 'error': 'Job not found'}), 404
    if not processor.cancel_job(job_id):
        return jsonify({'status': 'error', 'error': 'Job already finished'}), 409
    return jsonify({'status': 'cancelling', 'job_id': job_id})


@app.route('/collections/<job_id>/download')
@limiter.limit(DOWNLOAD_RATE_LIMIT)
def download_collection(job_id: str) -> Any:
    """Serve the finished archive for a completed job."""
    if not validate_job_id(job_id):
        return handle_validation_error("Invalid job id")
    job = get_job_processor().get_job(job_id)
    if job is None or job.status != JobStatus.COMPLETED or job.result is None:
        return "Not found", 404

    archive_path = Path(job.result.archive_path)
    if not archive_path.exists():
        return "Not found", 404
    return send_file(str(archive_path), mimetype='application/zip', as_attachment=True,
                     download_name=download_name_for(job.params))


@app.route('/preview', methods=['POST'])
@limiter.limit(PREVIEW_RATE_LIMIT)
def preview() -> Any:
    """Render one random token as PNG, optionally as a silhouette."""
    data = request.get_json(silent=True) or {}
    try:
        size = validate_int_parameter(data.get('size'), 'size', 16, 1024, 512)
        seed = data.get('seed')
        if seed is not None:
            seed = validate_int_parameter(seed, 'seed', 0, 2 ** 63 - 1)
    except ValueError as e:
        return handle_validation_error(str(e))

    catalog = get_catalog()
    silhouette = bool(data.get('silhouette', False))
    exclude = catalog.backdrop_categories if silhouette else ()
    try:
        png_bytes, assignment = render_preview(catalog, get_loader(), (size, size),
                                               silhouette=silhouette, exclude_categories=exclude, seed=seed)
    except PfpForgeError as e:
        logger.error(f"Preview failed: {e}")
        return jsonify({'status': 'error', 'error': str(e), 'kind': e.kind}), 500

    response = send_file(io.BytesIO(png_bytes), mimetype='image/png', download_name='preview.png')
    response.headers['X-Traits'] = ";".join(f"{c}={t}" for c, t in assignment.populated())
    return response


@app.route('/metadata/placeholders', methods=['POST'])
@limiter.limit(SUBMIT_RATE_LIMIT)
def placeholder_metadata() -> Any:
    """Build a ZIP of empty metadata documents for placeholder minting."""
    data = request.get_json(silent=True) or {}
    try:
        count = validate_int_parameter(data.get('count'), 'count', 1, settings.MAX_COLLECTION_SIZE)
        media_base_uri = validate_uri(data.get('media_base_uri'), 'media_base_uri')
    except ValueError as e:
        return handle_validation_error(str(e))

    destination = get_output_dir() / f"placeholders-{uuid.uuid4().hex}.zip"
    try:
        path = build_placeholder_metadata_archive(destination, count, media_base_uri)
        payload = path.read_bytes()
        path.unlink()
    except (PfpForgeError, OSError) as e:
        logger.error(f"Placeholder metadata build failed: {e}")
        return jsonify({'status': 'error', 'error': str(e)}), 500

    return send_file(io.BytesIO(payload), mimetype='application/zip', as_attachment=True,
                     download_name=f"Empty-Metadata-{count}.zip")


@app.route('/admin/api/queue')
def admin_queue_api() -> Any:
    return jsonify(get_job_processor().get_stats())


if __name__ == '__main__':
    settings.configure_logging()
    settings.ensure_output_dir()
    app.run(host='0.0.0.0', port=settings.PORT, debug=False)
