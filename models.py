from datetime import datetime, timezone

from flask_sqlalchemy import SQLAlchemy

from normalization import ResourcePayload

db = SQLAlchemy()

RESOURCE_STATUSES = ('processing', 'completed', 'failed')
ALLOCATION_STATUSES = ('pending', 'allocated', 'deallocated', 'completed')


def _utcnow():
    return datetime.now(timezone.utc)


def _isoformat(value):
    return value.isoformat() if value else None


class Resource(db.Model):
    """One uploaded resource report and its extraction result"""
    __table_args__ = (
        db.Index('ix_resource_user_created', 'user_id', 'created_at'),
        db.Index('ix_resource_status', 'processing_status'),
    )

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.String(120), nullable=False)
    user_email = db.Column(db.String(255), nullable=False, default='')
    file_name = db.Column(db.String(255), nullable=False)
    file_size = db.Column(db.Integer, nullable=False)
    file_path = db.Column(db.String(512), nullable=False)
    processing_status = db.Column(db.String(20), nullable=False, default='processing')
    extracted_text = db.Column(db.Text, default='')
    resource_data = db.Column(db.JSON)
    # metadata
    page_count = db.Column(db.Integer)
    processing_date = db.Column(db.String(50))
    ai_model = db.Column(db.String(100))
    error_message = db.Column(db.Text)
    created_at = db.Column(db.DateTime, nullable=False, default=_utcnow)
    updated_at = db.Column(db.DateTime, nullable=False, default=_utcnow, onupdate=_utcnow)

    def mark_completed(self, extracted_text, payload: ResourcePayload, page_count, ai_model):
        self.extracted_text = extracted_text
        self.resource_data = payload.to_dict()
        self.page_count = page_count
        self.processing_date = _utcnow().isoformat()
        self.ai_model = ai_model
        self.processing_status = 'completed'

    def mark_failed(self, message):
        self.processing_status = 'failed'
        self.error_message = message

    def to_dict(self):
        """API view; never exposes file_path or extracted_text"""
        out = {
            'id': self.id,
            'userId': self.user_id,
            'userEmail': self.user_email,
            'fileName': self.file_name,
            'fileSize': self.file_size,
            'processingStatus': self.processing_status,
            'resourceData': self.resource_data,
            'metadata': {
                'pageCount': self.page_count,
                'processingDate': self.processing_date,
                'aiModel': self.ai_model,
            },
            'createdAt': _isoformat(self.created_at),
            'updatedAt': _isoformat(self.updated_at),
        }
        if self.error_message:
            out['errorMessage'] = self.error_message
        return out


class Allocation(db.Model):
    """Resources committed to a patient, linked to the source document"""
    __table_args__ = (
        db.Index('ix_allocation_user_created', 'user_id', 'created_at'),
    )

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.String(120), nullable=False)
    document_id = db.Column(db.Integer, db.ForeignKey('resource.id', ondelete='SET NULL'))
    patient_info = db.Column(db.JSON, nullable=False)
    prescription_details = db.Column(db.JSON, nullable=False)
    allocated_resources = db.Column(db.JSON, nullable=False)
    status = db.Column(db.String(20), nullable=False, default='allocated')
    notes = db.Column(db.Text, default='')
    created_at = db.Column(db.DateTime, nullable=False, default=_utcnow)
    updated_at = db.Column(db.DateTime, nullable=False, default=_utcnow, onupdate=_utcnow)

    def to_dict(self):
        return {
            'id': self.id,
            'userId': self.user_id,
            'documentId': self.document_id,
            'patientInfo': self.patient_info,
            'prescriptionDetails': self.prescription_details,
            'allocatedResources': self.allocated_resources,
            'status': self.status,
            'notes': self.notes or '',
            'createdAt': _isoformat(self.created_at),
            'updatedAt': _isoformat(self.updated_at),
        }
