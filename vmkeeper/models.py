from datetime import datetime
from vmkeeper import db


class BackupRun(db.Model):
    """One execution of the backup pipeline"""
    __tablename__ = 'backup_runs'

    id = db.Column(db.Integer, primary_key=True)
    run_id = db.Column(db.String(32), unique=True, nullable=False)
    status = db.Column(db.String(20), nullable=False)  # running, success, nothing_to_do, failed
    started_at = db.Column(db.DateTime, default=datetime.utcnow, nullable=False)
    completed_at = db.Column(db.DateTime)
    vm_count = db.Column(db.Integer, default=0, nullable=False)
    archive_count = db.Column(db.Integer, default=0, nullable=False)
    rotation_performed = db.Column(db.Boolean, default=False, nullable=False)
    error_message = db.Column(db.Text)
    logs = db.Column(db.Text)  # Full run log, same content as {log_path}/{run_id}.log

    # Relationship
    archives = db.relationship('ArchiveRecord', back_populates='run', cascade='all, delete-orphan', lazy='dynamic')

    def __repr__(self):
        return f'<BackupRun {self.run_id} status={self.status}>'


class ArchiveRecord(db.Model):
    """An archive produced by a run and its verification outcome"""
    __tablename__ = 'archive_records'

    id = db.Column(db.Integer, primary_key=True)
    run_id = db.Column(db.Integer, db.ForeignKey('backup_runs.id'), nullable=False)
    file_name = db.Column(db.String(500), nullable=False)
    vm_id = db.Column(db.String(64), nullable=False)
    vm_name = db.Column(db.String(255), nullable=False)
    size_bytes = db.Column(db.BigInteger)
    checksum = db.Column(db.String(200))  # "{ALGO}: {hex}" or NULL when skipped/failed
    verification = db.Column(db.String(20), default='unverified', nullable=False)  # unverified, verified, failed

    # Relationship
    run = db.relationship('BackupRun', back_populates='archives')

    def __repr__(self):
        return f'<ArchiveRecord {self.file_name} verification={self.verification}>'
