# sophie_hub/models/system.py

from flask_login import UserMixin

from .base import BaseModel, db


class SystemSetting(BaseModel):
    """Key/value settings editable by admins; secrets are stored encrypted."""

    __tablename__ = "system_settings"

    id = db.Column(db.Integer, primary_key=True)
    key = db.Column(db.String(255), nullable=False, unique=True, index=True)
    value = db.Column(db.Text, nullable=True)
    encrypted = db.Column(db.Boolean, nullable=False, default=False)
    description = db.Column(db.Text, nullable=True)
    updated_by = db.Column(db.String(255), nullable=True)

    def __repr__(self):
        return f"<SystemSetting {self.key} encrypted={self.encrypted}>"


class AuditLog(BaseModel):
    """Operator-visible audit trail for sync runs and mapping rule changes"""

    __tablename__ = "audit_logs"

    id = db.Column(db.Integer, primary_key=True)
    action = db.Column(db.String(100), nullable=False, index=True)
    resource_type = db.Column(db.String(100), nullable=False)
    resource_id = db.Column(db.String(100), nullable=True)
    actor = db.Column(db.String(255), nullable=True)
    details = db.Column(db.JSON, nullable=True)

    def __repr__(self):
        return f"<AuditLog {self.action} {self.resource_type}:{self.resource_id}>"


class User(UserMixin, BaseModel):
    __tablename__ = "users"

    id = db.Column(db.Integer, primary_key=True)
    email = db.Column(db.String(255), nullable=False, unique=True, index=True)
    name = db.Column(db.String(255), nullable=True)
    role = db.Column(db.String(50), nullable=False, default="staff")
    # Flask-Login reads is_active; the column shadows UserMixin's property.
    is_active = db.Column(db.Boolean, nullable=False, default=True)

    @property
    def is_admin(self):
        return self.role == "admin"

    def __repr__(self):
        return f"<User {self.email} role={self.role}>"
