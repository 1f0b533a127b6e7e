#!/usr/bin/env python3
"""
GhostAtlas Server - REST API for encounters, ratings, verifications and moderation.
Serves the /api routes the client library talks to, accepts signed image
uploads and runs the AI enhancement pipeline on a background worker.
"""

import argparse
import hmac
import logging
import os
import uuid
from contextlib import contextmanager
from datetime import datetime, timezone
from functools import wraps
from typing import Dict, Optional

from dotenv import load_dotenv
from flask import Flask, g, jsonify, request, send_from_directory
from sqlalchemy.exc import SQLAlchemyError
from werkzeug.exceptions import HTTPException

import database
from atlas import setup_logging
from enhancement import (EnhancementPipeline, EnhancementQueue, GenerativeClient,
                         MediaStorage, StorageError)
from ghostatlas.errors import ErrorCode, ServiceError
from ghostatlas.services import (EncounterService, ModerationService, RatingService,
                                 VerificationService)
from ghostatlas.services.encounter_service import require_encounter
from ghostatlas.uploads import UploadSigner
from ghostatlas.validation import MAX_IMAGE_COUNT

load_dotenv()

logger = logging.getLogger('ghostatlas.server')

MAX_UPLOAD_BYTES = 10 * 1024 * 1024
IMAGE_EXTENSIONS = {
    'image/jpeg': 'jpg',
    'image/png': 'png',
    'image/webp': 'webp',
    'image/gif': 'gif',
}
_HTTP_ERROR_CODES = {
    400: ErrorCode.INVALID_REQUEST,
    401: ErrorCode.UNAUTHORIZED,
    403: ErrorCode.FORBIDDEN,
    404: ErrorCode.NOT_FOUND,
    405: ErrorCode.INVALID_REQUEST,
    413: ErrorCode.VALIDATION_ERROR,
    429: ErrorCode.RATE_LIMIT_EXCEEDED,
}

app = Flask(__name__)
app.config['MAX_CONTENT_LENGTH'] = MAX_UPLOAD_BYTES

# Wired by init_services(); module-level like the database engine.
settings: Dict = {}
storage: Optional[MediaStorage] = None
signer: Optional[UploadSigner] = None
enhancement_queue: Optional[EnhancementQueue] = None
encounter_service: Optional[EncounterService] = None
rating_service: Optional[RatingService] = None
verification_service: Optional[VerificationService] = None
moderation_service: Optional[ModerationService] = None


def load_settings() -> Dict:
    """Read server settings from the environment (``.env`` already loaded)."""
    return {
        'media_dir': os.getenv('GHOSTATLAS_MEDIA_DIR', 'media'),
        'public_url': os.getenv('GHOSTATLAS_PUBLIC_URL', 'http://127.0.0.1:5000'),
        'upload_secret': os.getenv('GHOSTATLAS_UPLOAD_SECRET') or os.urandom(24).hex(),
        'admin_api_key': os.getenv('GHOSTATLAS_ADMIN_API_KEY'),
        'generative_url': os.getenv('GHOSTATLAS_GENERATIVE_URL'),
        'generative_api_key': os.getenv('GHOSTATLAS_GENERATIVE_API_KEY'),
    }


def init_services(overrides: Optional[Dict] = None, enqueue=None) -> None:
    """Build the storage, signer, enhancement queue and services.

    Args:
        overrides: Settings replacing the environment values.
        enqueue:   Replacement for the enhancement queue's ``submit`` (tests
                   pass a recorder so no worker thread is started).
    """
    global settings, storage, signer, enhancement_queue
    global encounter_service, rating_service, verification_service, moderation_service

    if enhancement_queue is not None:
        enhancement_queue.close(wait=False)
        enhancement_queue = None

    settings = load_settings()
    settings.update(overrides or {})
    storage = MediaStorage(settings['media_dir'], settings['public_url'])
    signer = UploadSigner(settings['upload_secret'], settings['public_url'])

    if enqueue is None:
        client = None
        if settings['generative_url']:
            client = GenerativeClient(settings['generative_url'],
                                      api_key=settings['generative_api_key'])
        else:
            logger.warning("GHOSTATLAS_GENERATIVE_URL not set; enhancement runs will fail")
        enhancement_queue = EnhancementQueue(EnhancementPipeline(database, client, storage))
        enqueue = enhancement_queue.submit

    encounter_service = EncounterService(database, signer=signer, enqueue=enqueue)
    rating_service = RatingService(database)
    verification_service = VerificationService(database)
    moderation_service = ModerationService(database, enqueue=enqueue)


# ---------------------------------------------------------------------------
# Request plumbing
# ---------------------------------------------------------------------------

@contextmanager
def db_session():
    db = database.SessionLocal()
    try:
        yield db
    finally:
        db.close()


def _timestamp() -> str:
    return datetime.now(timezone.utc).isoformat().replace('+00:00', 'Z')


def error_response(code: ErrorCode, message: str, status: int):
    return jsonify({
        'errorCode': code.value,
        'message': message,
        'timestamp': _timestamp(),
        'requestId': getattr(g, 'request_id', None),
    }), status


def json_body():
    """Return the parsed JSON body or raise ``VALIDATION_ERROR``."""
    body = request.get_json(silent=True)
    if body is None:
        raise ServiceError(ErrorCode.VALIDATION_ERROR, 'Invalid JSON in request body')
    return body


def require_admin(f):
    """Decorator to require the admin API key when one is configured"""
    @wraps(f)
    def decorated_function(*args, **kwargs):
        expected = settings.get('admin_api_key')
        if expected:
            supplied = request.headers.get('X-Api-Key', '')
            if not hmac.compare_digest(supplied, expected):
                return error_response(ErrorCode.UNAUTHORIZED, 'Admin API key required', 401)
        return f(*args, **kwargs)
    return decorated_function


@app.before_request
def assign_request_id():
    g.request_id = request.headers.get('X-Request-Id') or str(uuid.uuid4())


@app.after_request
def add_standard_headers(response):
    response.headers['Access-Control-Allow-Origin'] = '*'
    response.headers['Access-Control-Allow-Headers'] = 'Content-Type,X-Api-Key,X-Request-Id'
    response.headers['Access-Control-Allow-Methods'] = 'GET,POST,PUT,OPTIONS'
    response.headers['X-Request-Id'] = getattr(g, 'request_id', '')
    return response


@app.errorhandler(ServiceError)
def handle_service_error(exc: ServiceError):
    if exc.status >= 500:
        logger.error("%s: %s", exc.code.value, exc.message)
    return error_response(exc.code, exc.message, exc.status)


@app.errorhandler(SQLAlchemyError)
def handle_database_error(exc: SQLAlchemyError):
    logger.exception("Database error: %s", exc)
    return error_response(ErrorCode.DATABASE_ERROR, 'Database operation failed', 500)


@app.errorhandler(StorageError)
def handle_storage_error(exc: StorageError):
    logger.error("Storage error: %s", exc)
    return error_response(ErrorCode.STORAGE_ERROR, 'Failed to store file', 500)


@app.errorhandler(HTTPException)
def handle_http_error(exc: HTTPException):
    code = _HTTP_ERROR_CODES.get(exc.code, ErrorCode.INTERNAL_ERROR)
    return error_response(code, exc.description or exc.name, exc.code)


@app.errorhandler(Exception)
def handle_unexpected_error(exc: Exception):
    logger.exception("Unhandled error: %s", exc)
    return error_response(ErrorCode.INTERNAL_ERROR, 'An unexpected error occurred', 500)


# ---------------------------------------------------------------------------
# Encounters
# ---------------------------------------------------------------------------

@app.route('/api/encounters', methods=['GET'])
def list_encounters():
    with db_session() as db:
        return jsonify(encounter_service.list_nearby(
            db,
            request.args.get('latitude'),
            request.args.get('longitude'),
            radius=request.args.get('radius'),
            limit=request.args.get('limit'),
            next_token=request.args.get('nextToken'),
        ))


@app.route('/api/encounters/all', methods=['GET'])
def list_all_encounters():
    with db_session() as db:
        return jsonify(encounter_service.list_all(db, limit=request.args.get('limit')))


@app.route('/api/encounters', methods=['POST'])
def submit_encounter():
    body = json_body()
    with db_session() as db:
        return jsonify(encounter_service.submit(db, body)), 201


@app.route('/api/encounters/<encounter_id>', methods=['GET'])
def get_encounter(encounter_id):
    with db_session() as db:
        return jsonify(encounter_service.get_detail(db, encounter_id))


@app.route('/api/encounters/<encounter_id>/upload-complete', methods=['PUT'])
def upload_complete(encounter_id):
    with db_session() as db:
        return jsonify(encounter_service.trigger_enhancement(db, encounter_id))


@app.route('/api/encounters/<encounter_id>/rate', methods=['POST'])
def rate_encounter(encounter_id):
    body = json_body()
    with db_session() as db:
        return jsonify(rating_service.rate(db, encounter_id, body))


@app.route('/api/encounters/<encounter_id>/verify', methods=['POST'])
def verify_encounter(encounter_id):
    body = json_body()
    with db_session() as db:
        return jsonify(verification_service.verify(db, encounter_id, body))


# ---------------------------------------------------------------------------
# Uploads & media
# ---------------------------------------------------------------------------

@app.route('/api/uploads/<encounter_id>/<int:index>', methods=['PUT'])
def upload_image(encounter_id, index):
    """Accept one raw image body for a URL issued at submission time."""
    if index >= MAX_IMAGE_COUNT or not signer.verify(
            encounter_id, index, request.args.get('expires'), request.args.get('signature')):
        raise ServiceError(ErrorCode.FORBIDDEN, 'Invalid or expired upload URL')
    content_type = (request.content_type or '').split(';')[0].strip().lower()
    extension = IMAGE_EXTENSIONS.get(content_type)
    if extension is None:
        raise ServiceError(ErrorCode.VALIDATION_ERROR,
                           f"Unsupported image type '{content_type or 'unknown'}'")
    data = request.get_data()
    if not data:
        raise ServiceError(ErrorCode.VALIDATION_ERROR, 'Image body is empty')

    with db_session() as db:
        require_encounter(database, db, encounter_id)
        url = storage.save(f'encounters/{encounter_id}/images/{index}.{extension}', data)
        added = encounter_service.attach_image(db, encounter_id, url)
    logger.info("Stored image %d for encounter %s (%d bytes)", index, encounter_id, len(data))
    return jsonify({'encounterId': encounter_id, 'imageUrl': url, 'added': added})


@app.route('/media/<path:key>', methods=['GET'])
def serve_media(key):
    return send_from_directory(storage.root, key)


# ---------------------------------------------------------------------------
# Admin
# ---------------------------------------------------------------------------

@app.route('/api/admin/encounters/pending', methods=['GET'])
@require_admin
def list_pending():
    with db_session() as db:
        return jsonify(moderation_service.list_pending(
            db, limit=request.args.get('limit'), next_token=request.args.get('nextToken')))


@app.route('/api/admin/encounters/<encounter_id>/approve', methods=['POST'])
@require_admin
def approve_encounter(encounter_id):
    with db_session() as db:
        return jsonify(moderation_service.approve(db, encounter_id))


@app.route('/api/admin/encounters/<encounter_id>/reject', methods=['POST'])
@require_admin
def reject_encounter(encounter_id):
    body = request.get_json(silent=True) or {}
    with db_session() as db:
        return jsonify(moderation_service.reject(db, encounter_id, body.get('reason')))


@app.route('/api/health', methods=['GET'])
def health():
    return jsonify({
        'status': 'ok',
        'enhancementQueue': enhancement_queue.pending if enhancement_queue else 0,
        'timestamp': _timestamp(),
    })


init_services()


def main():
    """Main entry point for the server"""
    parser = argparse.ArgumentParser(description='GhostAtlas REST server')
    parser.add_argument('--host', default='127.0.0.1', help='Interface to bind')
    parser.add_argument('--port', type=int, default=5000, help='Port to listen on')
    parser.add_argument('--database-url', help='SQLAlchemy URL (overrides GHOSTATLAS_DATABASE_URL)')
    parser.add_argument('--log-level', default=os.getenv('GHOSTATLAS_LOG_LEVEL', 'INFO'),
                        help='DEBUG, INFO, WARNING, ERROR or CRITICAL')
    parser.add_argument('--no-log-file', action='store_true',
                        help='Do not write logs/ghostatlas_server.log')
    args = parser.parse_args()

    setup_logging(args.log_level)
    if not args.no_log_file:
        try:
            os.makedirs('logs', exist_ok=True)
            fh = logging.FileHandler('logs/ghostatlas_server.log')
            fh.setFormatter(logging.Formatter('[%(asctime)s] %(levelname)s %(name)s: %(message)s'))
            logging.getLogger('ghostatlas').addHandler(fh)
        except OSError:
            logger.warning('Could not create log file handler')

    if args.database_url:
        database.configure(args.database_url)
        init_services()
    database.init_db()

    print("\n" + "=" * 60)
    print("👻 GhostAtlas server is starting...")
    print("=" * 60)
    print(f"\n  API:   http://{args.host}:{args.port}/api")
    print(f"  Media: {settings['media_dir']}")
    print("\nPress Ctrl+C to stop the server")
    print("=" * 60 + "\n")

    try:
        app.run(host=args.host, port=args.port, debug=False)
    except KeyboardInterrupt:
        print("\n🛑 GhostAtlas server stopped\n")
    finally:
        if enhancement_queue is not None:
            enhancement_queue.close(wait=False)


if __name__ == "__main__":
    main()
