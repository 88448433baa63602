import io
from datetime import datetime, timedelta, timezone

import pytest
from flask_jwt_extended import create_access_token

from ai_service import resource_extractor
from app import create_app
from models import Resource, db

JWT_SECRET = 'test-secret-key-that-is-long-enough-for-hs256'


@pytest.fixture
def app(tmp_path):
    app = create_app({
        'TESTING': True,
        'SQLALCHEMY_DATABASE_URI': 'sqlite:///:memory:',
        'JWT_SECRET_KEY': JWT_SECRET,
        'UPLOAD_FOLDER': str(tmp_path / 'uploads'),
        'OPENAI_API_KEY': None,
        'LOW_STOCK_THRESHOLD': 5,
    })
    yield app
    with app.app_context():
        db.session.remove()
        db.drop_all()


@pytest.fixture
def client(app):
    return app.test_client()


def _headers(app, owner_id, email):
    with app.app_context():
        token = create_access_token(identity=owner_id, additional_claims={'email': email})
    return {'Authorization': f'Bearer {token}'}


@pytest.fixture
def auth_headers(app):
    return _headers(app, 'user-1', 'staff@hospital.test')


@pytest.fixture
def other_headers(app):
    return _headers(app, 'user-2', 'other@hospital.test')


@pytest.fixture
def fake_extractor(monkeypatch):
    """Replace the PDF and AI calls; set .result / .error on the returned object"""
    class Fake:
        text = 'Hospital resource report'
        pages = 2
        result = {}
        error = None

    fake = Fake()

    def extract_text(path):
        return fake.text, fake.pages

    def analyze_resources(text):
        if fake.error is not None:
            raise fake.error
        return fake.result

    monkeypatch.setattr(resource_extractor, 'extract_text', extract_text)
    monkeypatch.setattr(resource_extractor, 'analyze_resources', analyze_resources)
    return fake


@pytest.fixture
def pdf_upload():
    def make(name='report.pdf'):
        return {'pdf': (io.BytesIO(b'%PDF-1.4\n% test document\n'), name, 'application/pdf')}
    return make


@pytest.fixture
def add_resource(app):
    """Insert a stored resource row directly, bypassing the upload pipeline"""
    counter = {'n': 0}

    def add(resource_data, owner_id='user-1', status='completed', file_name=None):
        counter['n'] += 1
        created = datetime(2025, 1, 1, tzinfo=timezone.utc) + timedelta(minutes=counter['n'])
        with app.app_context():
            resource = Resource(
                user_id=owner_id,
                user_email=f'{owner_id}@hospital.test',
                file_name=file_name or f'report-{counter["n"]}.pdf',
                file_size=100,
                file_path=f'/nonexistent/report-{counter["n"]}.pdf',
                processing_status=status,
                resource_data=resource_data,
                created_at=created,
                updated_at=created,
            )
            db.session.add(resource)
            db.session.commit()
            return resource.id
    return add
