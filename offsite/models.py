from datetime import datetime
from offsite import db


class Option(db.Model):
    """Named JSON document (manifest, SLA metrics, destination settings)"""
    __tablename__ = 'options'

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(191), unique=True, nullable=False)
    value = db.Column(db.Text, nullable=False)  # JSON string
    updated_at = db.Column(db.DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)

    def __repr__(self):
        return f'<Option {self.name}>'


class TaskLock(db.Model):
    """Expiring lock record guarding single-instance background passes"""
    __tablename__ = 'task_locks'

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(191), unique=True, nullable=False)
    token = db.Column(db.String(64), nullable=False)
    expires_at = db.Column(db.Integer, nullable=False)  # Epoch seconds
    created_at = db.Column(db.DateTime, default=datetime.utcnow, nullable=False)

    def __repr__(self):
        return f'<TaskLock {self.name} expires_at={self.expires_at}>'


class EncryptionKey(db.Model):
    """Salt for the key that encrypts destination secrets"""
    __tablename__ = 'encryption_key'

    id = db.Column(db.Integer, primary_key=True)
    salt = db.Column(db.Text, nullable=False)  # Base64-encoded
    created_at = db.Column(db.DateTime, default=datetime.utcnow, nullable=False)

    def __repr__(self):
        return f'<EncryptionKey id={self.id}>'
