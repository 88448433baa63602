import logging
import math
import os
import pathlib
import uuid
from datetime import datetime, timezone

import click
from dotenv import load_dotenv
from flask import Flask, jsonify, request
from flask_cors import CORS
from flask_jwt_extended import JWTManager, get_jwt, get_jwt_identity, jwt_required
from werkzeug.exceptions import HTTPException, RequestEntityTooLarge
from werkzeug.utils import secure_filename

from ai_service import inventory_alert, resource_extractor
from allocations import ledger
from errors import MediOpsError, ValidationError, NotFoundError
from models import db, Resource
from normalization import normalize_extraction

log = logging.getLogger(__name__)

BASE_DIR = pathlib.Path(__file__).parent.resolve()
DEFAULT_ORIGINS = 'http://localhost:3000,http://localhost:3001'


# ---------------- HELPER FUNCTIONS ----------------
def _load_config(app, test_config=None):
    load_dotenv()
    app.config['SECRET_KEY'] = os.environ.get('SECRET_KEY', 'dev-secret-key-change-in-production')
    app.config['JWT_SECRET_KEY'] = os.environ.get('JWT_SECRET_KEY', app.config['SECRET_KEY'])
    app.config['SQLALCHEMY_DATABASE_URI'] = os.environ.get(
        'DATABASE_URL', f"sqlite:///{BASE_DIR / 'mediops.db'}")
    app.config['SQLALCHEMY_TRACK_MODIFICATIONS'] = False
    app.config['UPLOAD_FOLDER'] = os.environ.get('UPLOAD_FOLDER', str(BASE_DIR / 'uploads'))
    app.config['MAX_CONTENT_LENGTH'] = int(os.environ.get('MAX_FILE_SIZE', 10 * 1024 * 1024))
    app.config['OPENAI_API_KEY'] = os.environ.get('OPENAI_API_KEY')
    app.config['OPENAI_MODEL'] = os.environ.get('OPENAI_MODEL')
    app.config['OPENAI_BASE_URL'] = os.environ.get('OPENAI_BASE_URL')
    app.config['OPENAI_TIMEOUT'] = float(os.environ.get('OPENAI_TIMEOUT', 60))
    app.config['OPENAI_MAX_RETRIES'] = int(os.environ.get('OPENAI_MAX_RETRIES', 2))
    app.config['LOW_STOCK_THRESHOLD'] = int(os.environ.get('LOW_STOCK_THRESHOLD', 5))
    app.config['CORS_ORIGINS'] = os.environ.get('CORS_ORIGINS', DEFAULT_ORIGINS)
    app.config['LOG_LEVEL'] = os.environ.get('LOG_LEVEL', 'INFO')
    app.config['APP_ENV'] = os.environ.get('APP_ENV', 'development')
    if test_config:
        app.config.update(test_config)


def _envelope(data=None, message=None, status=200, success=True):
    body = {'success': success}
    if data is not None:
        body['data'] = data
    if message:
        body['message'] = message
    return jsonify(body), status


def _error(message, status):
    return _envelope(message=message, status=status, success=False)


def _current_owner():
    """(owner id, owner email) of the authenticated caller"""
    return get_jwt_identity(), get_jwt().get('email', '')


def _json_body():
    data = request.get_json(silent=True)
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ValidationError('Request body must be a JSON object')
    return data


def _paging_args(default_limit=50):
    try:
        limit = int(request.args.get('limit', default_limit))
        page = int(request.args.get('page', 1))
    except ValueError:
        raise ValidationError('limit and page must be integers')
    if limit < 1 or page < 1:
        raise ValidationError('limit and page must be positive')
    return limit, page


def _pagination(total, page, limit):
    return {'total': total, 'page': page, 'limit': limit, 'pages': math.ceil(total / limit)}


def save_upload(file, upload_folder):
    """Save an uploaded file under a unique name; returns (original_name, saved_path)"""
    orig_name = secure_filename(file.filename) or 'upload.pdf'
    ext = os.path.splitext(orig_name)[1] or '.pdf'
    saved_path = os.path.join(upload_folder, f'resource-{uuid.uuid4()}{ext}')
    file.save(saved_path)
    return orig_name, saved_path


def remove_file(path):
    try:
        os.remove(path)
    except FileNotFoundError:
        pass
    except OSError as e:
        log.error('Error deleting file %s: %s', path, e)


def _is_pdf(file):
    return file.mimetype == 'application/pdf' or file.filename.lower().endswith('.pdf')


def process_resource(resource):
    """Run text extraction, AI extraction and normalization for a stored upload"""
    text, page_count = resource_extractor.extract_text(resource.file_path)
    raw = resource_extractor.analyze_resources(text)
    payload = normalize_extraction(raw)
    resource.mark_completed(text, payload, page_count, resource_extractor.model)
    db.session.commit()
    return resource


def create_app(test_config=None):
    app = Flask(__name__)
    _load_config(app, test_config)

    logging.basicConfig(
        level=app.config['LOG_LEVEL'],
        format='%(asctime)s [%(levelname)s] %(name)s: %(message)s',
    )
    log.info('[DB] Using database at: %s', app.config['SQLALCHEMY_DATABASE_URI'])

    # Initialize extensions
    db.init_app(app)
    jwt = JWTManager(app)
    jwt.unauthorized_loader(lambda reason: _error(reason, 401))
    jwt.invalid_token_loader(lambda reason: _error(reason, 401))
    jwt.expired_token_loader(lambda header, payload: _error('Token has expired', 401))
    origins = [o.strip() for o in app.config['CORS_ORIGINS'].split(',') if o.strip()]
    CORS(app, origins=origins, supports_credentials=True)
    resource_extractor.init_app(app)
    inventory_alert.threshold = app.config['LOW_STOCK_THRESHOLD']
    os.makedirs(app.config['UPLOAD_FOLDER'], exist_ok=True)

    with app.app_context():
        db.create_all()

    # ---------------- CLI ----------------
    @app.cli.command('init-db')
    def init_db():
        """Create missing tables"""
        db.create_all()
        click.echo('Database initialized.')

    @app.cli.command('reset-db')
    def reset_db():
        """Drop and recreate all tables (deletes all data)"""
        db.drop_all()
        db.create_all()
        click.echo('Database reset. All previous data has been deleted.')

    # ---------------- REQUEST LOGGING / ERRORS ----------------
    @app.before_request
    def log_request():
        log.info('%s %s', request.method, request.path)

    @app.errorhandler(MediOpsError)
    def handle_mediops_error(e):
        return _error(e.message, e.status_code)

    @app.errorhandler(RequestEntityTooLarge)
    def handle_too_large(e):
        return _error('File size exceeds the maximum limit', 400)

    @app.errorhandler(404)
    def not_found(e):
        return _error('Route not found', 404)

    @app.errorhandler(HTTPException)
    def handle_http_error(e):
        return _error(e.description, e.code)

    @app.errorhandler(Exception)
    def server_error(e):
        log.exception('Unhandled error: %s', e)
        db.session.rollback()
        return _error('Internal server error', 500)

    # ---------------- ROUTES ----------------
    @app.route('/health')
    def health():
        return jsonify({
            'success': True,
            'message': 'MediOps resources API is running',
            'timestamp': datetime.now(timezone.utc).isoformat(),
            'environment': app.config['APP_ENV'],
        })

    # ---------------- RESOURCE ENDPOINTS ----------------
    @app.route('/api/resources/upload', methods=['POST'])
    @jwt_required()
    def upload_resource():
        f = request.files.get('pdf')
        if f is None or not f.filename:
            return _error('No file uploaded', 400)
        if not _is_pdf(f):
            return _error('Only PDF files are allowed!', 400)

        owner_id, owner_email = _current_owner()
        orig_name, saved_path = save_upload(f, app.config['UPLOAD_FOLDER'])
        log.info('Processing resource PDF: %s', orig_name)

        resource = Resource(
            user_id=owner_id,
            user_email=owner_email,
            file_name=orig_name,
            file_size=os.path.getsize(saved_path),
            file_path=saved_path,
            processing_status='processing',
        )
        db.session.add(resource)
        db.session.commit()

        try:
            process_resource(resource)
        except Exception as e:
            db.session.rollback()
            message = e.message if isinstance(e, MediOpsError) else str(e) or 'Error analyzing resource PDF'
            log.exception('Resource PDF analysis error for %s', orig_name)
            resource.mark_failed(message)
            db.session.commit()
            remove_file(saved_path)
            return _error(message, 500)

        return _envelope({
            'resourceId': resource.id,
            'fileName': resource.file_name,
            'fileSize': resource.file_size,
            'pageCount': resource.page_count,
            'resourceData': resource.resource_data,
            'processingStatus': resource.processing_status,
        }, message='Resource PDF analyzed successfully')

    @app.route('/api/resources')
    @jwt_required()
    def list_resources():
        owner_id, _ = _current_owner()
        limit, page = _paging_args()
        query = Resource.query.filter_by(user_id=owner_id)
        total = query.count()
        resources = (query.order_by(Resource.created_at.desc(), Resource.id.desc())
                     .limit(limit).offset((page - 1) * limit).all())
        return _envelope({
            'resources': [r.to_dict() for r in resources],
            'pagination': _pagination(total, page, limit),
        })

    @app.route('/api/resources/latest')
    @jwt_required()
    def latest_resource():
        owner_id, _ = _current_owner()
        resource = (Resource.query.filter_by(user_id=owner_id)
                    .order_by(Resource.created_at.desc(), Resource.id.desc()).first())
        if resource is None:
            raise NotFoundError('No resources found')
        return _envelope(resource.to_dict())

    @app.route('/api/resources/aggregated')
    @jwt_required()
    def aggregated_resources():
        owner_id, _ = _current_owner()
        return _envelope(ledger.snapshot(owner_id).to_dict())

    def _owned_resource(resource_id):
        owner_id, _ = _current_owner()
        resource = Resource.query.filter_by(id=resource_id, user_id=owner_id).first()
        if resource is None:
            raise NotFoundError('Resource not found')
        return resource

    @app.route('/api/resources/<int:resource_id>')
    @jwt_required()
    def get_resource(resource_id):
        return _envelope(_owned_resource(resource_id).to_dict())

    @app.route('/api/resources/<int:resource_id>', methods=['DELETE'])
    @jwt_required()
    def delete_resource(resource_id):
        resource = _owned_resource(resource_id)
        file_path = resource.file_path
        db.session.delete(resource)
        db.session.commit()
        remove_file(file_path)
        return _envelope(message='Resource deleted successfully')

    # ---------------- ALLOCATION ENDPOINTS ----------------
    @app.route('/api/allocations', methods=['POST'])
    @jwt_required()
    def create_allocation():
        data = _json_body()
        owner_id, _ = _current_owner()
        document_id = data.get('documentId')
        if document_id is not None:
            try:
                document_id = int(document_id)
            except (TypeError, ValueError):
                raise ValidationError('documentId must be an integer')
        allocation, alerts = ledger.create(
            owner_id,
            document_id,
            data.get('patientInfo'),
            data.get('prescriptionDetails'),
            data.get('allocatedResources'),
            data.get('notes'),
        )
        return _envelope({
            'allocation': allocation.to_dict(),
            'lowStockAlerts': alerts,
        }, message='Resources allocated successfully', status=201)

    @app.route('/api/allocations')
    @jwt_required()
    def list_allocations():
        owner_id, _ = _current_owner()
        limit, page = _paging_args()
        allocations, total = ledger.list(owner_id, request.args.get('status'), limit, page)
        return _envelope({
            'allocations': [a.to_dict() for a in allocations],
            'pagination': _pagination(total, page, limit),
        })

    @app.route('/api/allocations/check-stock', methods=['POST'])
    @jwt_required()
    def check_stock():
        data = _json_body()
        owner_id, _ = _current_owner()
        include_holds = data.get('includeHolds', False)
        if not isinstance(include_holds, bool):
            raise ValidationError('includeHolds must be a boolean')
        return _envelope(ledger.check_stock(owner_id, include_holds=include_holds))

    @app.route('/api/allocations/forecast')
    @jwt_required()
    def forecast_demand():
        owner_id, _ = _current_owner()
        try:
            days = int(request.args.get('days', 7))
        except ValueError:
            raise ValidationError('days must be an integer')
        return _envelope(ledger.forecast(owner_id, days))

    @app.route('/api/allocations/<int:allocation_id>')
    @jwt_required()
    def get_allocation(allocation_id):
        owner_id, _ = _current_owner()
        return _envelope(ledger.get(owner_id, allocation_id).to_dict())

    @app.route('/api/allocations/<int:allocation_id>', methods=['PUT'])
    @jwt_required()
    def update_allocation(allocation_id):
        data = _json_body()
        owner_id, _ = _current_owner()
        allocation = ledger.update_status(owner_id, allocation_id, data.get('status'), data.get('notes'))
        return _envelope(allocation.to_dict(), message='Allocation updated successfully')

    @app.route('/api/allocations/<int:allocation_id>', methods=['DELETE'])
    @jwt_required()
    def deallocate(allocation_id):
        owner_id, _ = _current_owner()
        allocation = ledger.deallocate(owner_id, allocation_id)
        return _envelope(allocation.to_dict(), message='Resources deallocated successfully')

    return app


# ---------------- MAIN ----------------
if __name__ == '__main__':
    app = create_app()
    app.run(debug=True, host='127.0.0.1', port=int(os.environ.get('PORT', 5000)))
