from datetime import datetime
from models.db import db

class StoredDocument(db.Model):
    __tablename__ = "documents"

    id = db.Column(db.Integer, primary_key=True)

    collection = db.Column(db.String(255), nullable=False, index=True)
    doc_id = db.Column(db.String(255), nullable=False)

    # field map in typed-value form (see store.codec)
    data = db.Column(db.JSON, nullable=False, default=dict)

    # bumped on every write, used for compare-and-set
    version = db.Column(db.Integer, nullable=False, default=1)

    created_at = db.Column(db.DateTime, default=datetime.utcnow, nullable=False)
    updated_at = db.Column(db.DateTime, default=datetime.utcnow, nullable=False)

    __table_args__ = (
        # One document per key; a second create for the same key fails here
        db.UniqueConstraint("collection", "doc_id", name="uq_document_key"),
    )
