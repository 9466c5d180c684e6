"""Core data models for CHW visits, patient identity tags, feedback, RBAC and audit trails."""
import hashlib
import uuid
from datetime import datetime

from flask_login import UserMixin

from extensions import db
from utils.security import hash_password, verify_password


def generate_uuid() -> str:
	return str(uuid.uuid4())


TAG_KINDS: tuple[str, ...] = (
	"QR",
	"NFC",
)

VISIT_STATUSES: tuple[str, ...] = (
	"pending",
	"verified",
	"flagged",
	"rejected",
)

# flagged -> verified is the only way back after an investigation.
VISIT_STATUS_TRANSITIONS: dict[str, frozenset] = {
	"pending": frozenset({"verified", "flagged", "rejected"}),
	"flagged": frozenset({"verified", "rejected"}),
	"verified": frozenset(),
	"rejected": frozenset(),
}

FRAUD_SEVERITIES: tuple[str, ...] = (
	"low",
	"medium",
	"high",
	"critical",
)

VISIT_TYPES: tuple[str, ...] = (
	"routine_checkup",
	"vaccination",
	"emergency",
	"follow_up",
	"education",
	"other",
)

SERVICE_TYPES: tuple[str, ...] = (
	"health_screening",
	"medication_delivery",
	"education",
	"vaccination",
	"consultation",
	"emergency_care",
	"other",
)

LEDGER_STATUSES: tuple[str, ...] = (
	"pending",
	"anchored",
	"unavailable",
	"failed",
)

FEEDBACK_STATUSES: tuple[str, ...] = (
	"draft",
	"submitted",
	"reviewed",
	"resolved",
)

COMPLAINT_TYPES: tuple[str, ...] = (
	"service_quality",
	"unprofessional_behavior",
	"missing_services",
	"safety_concern",
	"billing",
	"other",
)

RATING_CATEGORIES: tuple[str, ...] = (
	"professionalism",
	"communication",
	"service_quality",
	"timeliness",
	"satisfaction",
)

PERMISSIONS: tuple[str, ...] = (
	"view_dashboard",
	"manage_chws",
	"verify_visits",
	"view_analytics",
	"manage_patients",
	"handle_complaints",
	"fraud_detection",
	"system_config",
	"user_management",
	"audit_logs",
)

SUPER_ADMIN_ROLE = "super_admin"

ROLE_PERMISSIONS: dict[str, tuple[str, ...]] = {
	SUPER_ADMIN_ROLE: PERMISSIONS,
	"admin": (
		"view_dashboard",
		"manage_chws",
		"verify_visits",
		"view_analytics",
		"manage_patients",
		"handle_complaints",
		"fraud_detection",
	),
	"supervisor": (
		"view_dashboard",
		"manage_chws",
		"verify_visits",
		"view_analytics",
		"fraud_detection",
	),
	"analyst": (
		"view_dashboard",
		"view_analytics",
	),
}


class Role(db.Model):
	__tablename__ = "roles"

	id = db.Column(db.Integer, primary_key=True)
	name = db.Column(db.String(50), unique=True, nullable=False, index=True)
	description = db.Column(db.String(255), nullable=True)
	permissions = db.Column(db.JSON, nullable=False, default=list)

	admins = db.relationship("AdminUser", back_populates="role", lazy="dynamic")

	@staticmethod
	def get_or_create(name: str, description: str = "", permissions=None):
		role = Role.query.filter_by(name=name).first()
		if role:
			return role
		role = Role(name=name, description=description, permissions=list(permissions or ()))
		db.session.add(role)
		db.session.commit()
		return role

	def permission_set(self) -> frozenset:
		return frozenset(self.permissions or ())

	def grants(self, permission: str) -> bool:
		return self.name == SUPER_ADMIN_ROLE or permission in self.permission_set()


class AdminUser(UserMixin, db.Model):
	__tablename__ = "admin_users"

	id = db.Column(db.String(36), primary_key=True, default=generate_uuid)
	username = db.Column(db.String(80), unique=True, nullable=False, index=True)
	email = db.Column(db.String(255), unique=True, nullable=False, index=True)
	full_name = db.Column(db.String(150), nullable=False)
	password_hash = db.Column(db.String(255), nullable=False)
	role_id = db.Column(db.Integer, db.ForeignKey("roles.id"), nullable=False)
	is_active = db.Column(db.Boolean, default=True, nullable=False)
	failed_login_attempts = db.Column(db.Integer, default=0, nullable=False)
	locked_until = db.Column(db.DateTime, nullable=True)
	organization = db.Column(db.String(255), nullable=True)
	department = db.Column(db.String(255), nullable=True)
	created_at = db.Column(db.DateTime, default=datetime.utcnow, nullable=False)
	last_login_at = db.Column(db.DateTime, nullable=True)

	role = db.relationship("Role", back_populates="admins")

	actor_type = "admin"

	def get_id(self) -> str:
		return f"admin:{self.id}"

	def set_password(self, password: str) -> None:
		self.password_hash = hash_password(password)

	def check_password(self, password: str) -> bool:
		return verify_password(self.password_hash, password)

	def has_permission(self, permission: str) -> bool:
		return bool(self.role and self.role.grants(permission))

	def is_locked(self, now: datetime | None = None) -> bool:
		return bool(self.locked_until and self.locked_until > (now or datetime.utcnow()))

	@property
	def actor_id(self) -> str:
		return self.username


class CHW(UserMixin, db.Model):
	__tablename__ = "chws"

	id = db.Column(db.String(36), primary_key=True, default=generate_uuid)
	chw_code = db.Column(db.String(64), unique=True, nullable=False, index=True)
	name = db.Column(db.String(150), nullable=False)
	email = db.Column(db.String(255), unique=True, nullable=False, index=True)
	phone = db.Column(db.String(32), nullable=False)
	password_hash = db.Column(db.String(255), nullable=False)
	license_number = db.Column(db.String(120), unique=True, nullable=False)
	wallet_address = db.Column(db.String(128), unique=True, nullable=False, index=True)
	is_active = db.Column(db.Boolean, default=True, nullable=False)
	is_verified = db.Column(db.Boolean, default=False, nullable=False)
	region = db.Column(db.String(120), nullable=True, index=True)
	organization = db.Column(db.String(255), nullable=True)
	specialization = db.Column(db.String(255), nullable=True)
	total_visits = db.Column(db.Integer, default=0, nullable=False)
	registered_at = db.Column(db.DateTime, default=datetime.utcnow, nullable=False)
	last_login_at = db.Column(db.DateTime, nullable=True)

	visits = db.relationship("Visit", back_populates="chw", lazy="dynamic")

	actor_type = "chw"

	def get_id(self) -> str:
		return f"chw:{self.id}"

	def set_password(self, password: str) -> None:
		self.password_hash = hash_password(password)

	def check_password(self, password: str) -> bool:
		return verify_password(self.password_hash, password)

	@property
	def actor_id(self) -> str:
		return self.chw_code

	def profile_payload(self) -> dict:
		return {
			"id": self.id,
			"chw_id": self.chw_code,
			"name": self.name,
			"email": self.email,
			"wallet_address": self.wallet_address,
			"region": self.region,
			"is_verified": self.is_verified,
			"is_active": self.is_active,
			"total_visits": self.total_visits,
			"last_login_at": self.last_login_at.isoformat() if self.last_login_at else None,
		}


class Patient(db.Model):
	__tablename__ = "patients"

	id = db.Column(db.String(36), primary_key=True, default=generate_uuid)
	patient_code = db.Column(db.String(64), unique=True, nullable=False, index=True)
	hashed_patient_id = db.Column(db.String(64), unique=True, nullable=False)
	age_group = db.Column(db.String(10), nullable=True)
	gender = db.Column(db.String(20), nullable=True)
	region = db.Column(db.String(120), nullable=True, index=True)
	district = db.Column(db.String(120), nullable=True)
	latitude = db.Column(db.Float, nullable=True)
	longitude = db.Column(db.Float, nullable=True)
	phone = db.Column(db.String(32), nullable=True)
	consent_given = db.Column(db.Boolean, default=False, nullable=False)
	consent_date = db.Column(db.DateTime, nullable=True)
	enrollment_date = db.Column(db.DateTime, default=datetime.utcnow, nullable=False, index=True)
	last_visit_date = db.Column(db.DateTime, nullable=True, index=True)
	total_visits = db.Column(db.Integer, default=0, nullable=False)
	is_active = db.Column(db.Boolean, default=True, nullable=False)

	tags = db.relationship("PatientTag", back_populates="patient", order_by="PatientTag.issued_at", lazy="dynamic")

	@staticmethod
	def hash_code(patient_code: str) -> str:
		return hashlib.sha256(patient_code.encode("utf-8")).hexdigest()

	def record_visit(self, when: datetime) -> None:
		self.total_visits = (self.total_visits or 0) + 1
		self.last_visit_date = when

	def snapshot(self) -> dict:
		return {
			"patient_id": self.patient_code,
			"hashed_id": self.hashed_patient_id,
			"total_visits": self.total_visits,
			"last_visit_date": self.last_visit_date.isoformat() if self.last_visit_date else None,
		}

	def anonymized_payload(self) -> dict:
		return {
			"hashed_id": self.hashed_patient_id,
			"age_group": self.age_group,
			"gender": self.gender,
			"region": self.region,
			"district": self.district,
			"total_visits": self.total_visits,
			"last_visit_date": self.last_visit_date.isoformat() if self.last_visit_date else None,
			"enrollment_date": self.enrollment_date.isoformat() if self.enrollment_date else None,
		}


class PatientTag(db.Model):
	__tablename__ = "patient_tags"

	id = db.Column(db.String(36), primary_key=True, default=generate_uuid)
	patient_id = db.Column(db.String(36), db.ForeignKey("patients.id"), nullable=False, index=True)
	kind = db.Column(db.String(8), nullable=False, index=True)
	token = db.Column(db.String(128), unique=True, nullable=False, index=True)
	physical_uid = db.Column(db.String(128), nullable=True, index=True)
	# Set only while active; NULLs never collide, so these carry the uniqueness rules.
	active_key = db.Column(db.String(120), unique=True, nullable=True)
	active_uid = db.Column(db.String(128), unique=True, nullable=True)
	is_active = db.Column(db.Boolean, default=True, nullable=False, index=True)
	issued_at = db.Column(db.DateTime, default=datetime.utcnow, nullable=False)
	expires_at = db.Column(db.DateTime, nullable=False)
	deactivated_at = db.Column(db.DateTime, nullable=True)

	__table_args__ = (
		db.CheckConstraint("kind IN ('QR','NFC')", name="ck_patient_tag_kind"),
	)

	patient = db.relationship("Patient", back_populates="tags")

	@staticmethod
	def slot_key(patient_id: str, kind: str) -> str:
		return f"{patient_id}:{kind}"

	def activate(self) -> None:
		self.is_active = True
		self.active_key = PatientTag.slot_key(self.patient_id, self.kind)
		self.active_uid = self.physical_uid

	def deactivate(self, now: datetime | None = None) -> None:
		self.is_active = False
		self.active_key = None
		self.active_uid = None
		self.deactivated_at = now or datetime.utcnow()

	def bind_uid(self, uid: str) -> None:
		self.physical_uid = uid
		self.active_uid = uid if self.is_active else None

	def is_expired(self, now: datetime | None = None) -> bool:
		return (now or datetime.utcnow()) > self.expires_at

	def public_payload(self) -> dict:
		return {
			"tag_id": self.id,
			"patient_id": self.patient.patient_code if self.patient else None,
			"kind": self.kind,
			"token": self.token,
			"physical_uid": self.physical_uid,
			"is_active": self.is_active,
			"issued_at": self.issued_at.isoformat(),
			"expires_at": self.expires_at.isoformat(),
		}


class Visit(db.Model):
	__tablename__ = "visits"

	id = db.Column(db.String(36), primary_key=True, default=generate_uuid)
	visit_id = db.Column(db.String(120), unique=True, nullable=False, index=True)
	patient_id = db.Column(db.String(36), db.ForeignKey("patients.id"), nullable=False, index=True)
	patient_code = db.Column(db.String(64), nullable=False, index=True)
	chw_id = db.Column(db.String(36), db.ForeignKey("chws.id"), nullable=False, index=True)
	chw_code = db.Column(db.String(64), nullable=False, index=True)
	chw_address = db.Column(db.String(128), nullable=False)
	latitude = db.Column(db.Float, nullable=False)
	longitude = db.Column(db.Float, nullable=False)
	address = db.Column(db.String(500), nullable=True)
	accuracy = db.Column(db.Float, nullable=True)
	timestamp = db.Column(db.DateTime, nullable=False, index=True)
	timestamp_ms = db.Column(db.BigInteger, nullable=False)
	signature = db.Column(db.Text, nullable=False)
	visit_hash = db.Column(db.String(64), nullable=False, index=True)
	hash_version = db.Column(db.String(8), nullable=False, default="v1")
	tag_payload = db.Column(db.String(128), nullable=False)
	tag_kind = db.Column(db.String(8), nullable=False, default="QR")
	visit_type = db.Column(db.String(40), nullable=False, default="routine_checkup")
	services = db.Column(db.JSON, nullable=False, default=list)
	duration_minutes = db.Column(db.Integer, nullable=True)
	notes = db.Column(db.Text, nullable=True)
	device_info = db.Column(db.JSON, nullable=True)
	fraud_score = db.Column(db.Integer, nullable=False, default=0, index=True)
	status = db.Column(db.String(20), nullable=False, default="pending", index=True)
	verified_by = db.Column(db.String(120), nullable=True)
	verified_at = db.Column(db.DateTime, nullable=True)
	rejection_reason = db.Column(db.String(500), nullable=True)
	has_feedback = db.Column(db.Boolean, nullable=False, default=False)
	feedback_hash = db.Column(db.String(64), nullable=True)
	ledger_status = db.Column(db.String(20), nullable=False, default="pending", index=True)
	ledger_tx_reference = db.Column(db.String(128), nullable=True)
	ledger_block_reference = db.Column(db.String(128), nullable=True)
	created_at = db.Column(db.DateTime, default=datetime.utcnow, nullable=False, index=True)
	updated_at = db.Column(db.DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)

	__table_args__ = (
		db.CheckConstraint(
			"status IN ('pending','verified','flagged','rejected')",
			name="ck_visit_status_valid",
		),
		db.CheckConstraint("fraud_score >= 0 AND fraud_score <= 100", name="ck_visit_fraud_score_range"),
		db.CheckConstraint(
			"ledger_status IN ('pending','anchored','unavailable','failed')",
			name="ck_visit_ledger_status",
		),
		db.Index("ix_visits_chw_timestamp", "chw_code", "timestamp"),
	)

	chw = db.relationship("CHW", back_populates="visits")
	patient = db.relationship("Patient")
	fraud_flags = db.relationship(
		"FraudFlag",
		back_populates="visit",
		order_by="FraudFlag.flagged_at",
		cascade="all, delete-orphan",
	)
	feedback = db.relationship("Feedback", back_populates="visit", uselist=False)

	@property
	def is_verified(self) -> bool:
		return self.status == "verified"

	@property
	def has_ledger_receipt(self) -> bool:
		return bool(self.ledger_tx_reference)

	def can_transition(self, new_status: str) -> bool:
		return new_status in VISIT_STATUS_TRANSITIONS.get(self.status, frozenset())

	def append_note(self, label: str, text: str) -> None:
		entry = f"{label}: {text}"
		self.notes = f"{self.notes}\n\n{entry}" if self.notes else entry

	def public_payload(self, include_sensitive: bool = False) -> dict:
		payload = {
			"visit_id": self.visit_id,
			"patient_id": self.patient_code,
			"chw_id": self.chw_code,
			"chw_address": self.chw_address,
			"location": {
				"latitude": self.latitude,
				"longitude": self.longitude,
				"address": self.address,
				"accuracy": self.accuracy,
			},
			"timestamp": self.timestamp.isoformat(),
			"visit_hash": self.visit_hash,
			"hash_version": self.hash_version,
			"visit_type": self.visit_type,
			"services": list(self.services or []),
			"duration": self.duration_minutes,
			"fraud_score": self.fraud_score,
			"fraud_flags": [flag.public_payload() for flag in self.fraud_flags],
			"status": self.status,
			"verified_by": self.verified_by,
			"verified_at": self.verified_at.isoformat() if self.verified_at else None,
			"has_feedback": self.has_feedback,
			"ledger": {
				"status": self.ledger_status,
				"tx_reference": self.ledger_tx_reference,
				"block_reference": self.ledger_block_reference,
			},
		}
		if include_sensitive:
			payload["signature"] = self.signature
			payload["device_info"] = self.device_info
			payload["notes"] = self.notes
		return payload


class FraudFlag(db.Model):
	__tablename__ = "fraud_flags"

	id = db.Column(db.Integer, primary_key=True)
	visit_pk = db.Column(db.String(36), db.ForeignKey("visits.id"), nullable=False, index=True)
	kind = db.Column(db.String(80), nullable=False, index=True)
	severity = db.Column(db.String(20), nullable=False, default="medium")
	reason = db.Column(db.String(500), nullable=True)
	flagged_by = db.Column(db.String(120), nullable=True)
	flagged_at = db.Column(db.DateTime, default=datetime.utcnow, nullable=False, index=True)

	__table_args__ = (
		db.CheckConstraint("severity IN ('low','medium','high','critical')", name="ck_fraud_flag_severity"),
	)

	visit = db.relationship("Visit", back_populates="fraud_flags")

	def public_payload(self) -> dict:
		return {
			"type": self.kind,
			"severity": self.severity,
			"reason": self.reason,
			"flagged_at": self.flagged_at.isoformat() if self.flagged_at else None,
		}


class Feedback(db.Model):
	__tablename__ = "feedback"

	id = db.Column(db.String(36), primary_key=True, default=generate_uuid)
	feedback_id = db.Column(db.String(64), unique=True, nullable=False, index=True)
	visit_id = db.Column(db.String(120), db.ForeignKey("visits.visit_id"), unique=True, nullable=False)
	patient_code = db.Column(db.String(64), nullable=False, index=True)
	rating_overall = db.Column(db.Integer, nullable=False, index=True)
	rating_professionalism = db.Column(db.Integer, nullable=True)
	rating_communication = db.Column(db.Integer, nullable=True)
	rating_service_quality = db.Column(db.Integer, nullable=True)
	rating_timeliness = db.Column(db.Integer, nullable=True)
	rating_satisfaction = db.Column(db.Integer, nullable=True)
	comment_positive = db.Column(db.String(500), nullable=True)
	comment_improvement = db.Column(db.String(500), nullable=True)
	comment_general = db.Column(db.String(1000), nullable=True)
	has_complaint = db.Column(db.Boolean, nullable=False, default=False)
	complaint_type = db.Column(db.String(40), nullable=True)
	complaint_details = db.Column(db.String(1000), nullable=True)
	complaint_severity = db.Column(db.String(20), nullable=True)
	otp_phone = db.Column(db.String(32), nullable=False, index=True)
	otp_verified = db.Column(db.Boolean, nullable=False, default=False)
	otp_attempts = db.Column(db.Integer, nullable=False, default=0)
	otp_verified_at = db.Column(db.DateTime, nullable=True)
	feedback_hash = db.Column(db.String(64), nullable=True, unique=True)
	submission_method = db.Column(db.String(20), nullable=False, default="web")
	status = db.Column(db.String(20), nullable=False, default="draft", index=True)
	submitted_at = db.Column(db.DateTime, nullable=True)
	reviewed_by = db.Column(db.String(120), nullable=True)
	reviewed_at = db.Column(db.DateTime, nullable=True)
	review_notes = db.Column(db.Text, nullable=True)
	created_at = db.Column(db.DateTime, default=datetime.utcnow, nullable=False, index=True)

	__table_args__ = (
		db.CheckConstraint("rating_overall BETWEEN 1 AND 5", name="ck_feedback_rating_overall"),
		db.CheckConstraint(
			"status IN ('draft','submitted','reviewed','resolved')",
			name="ck_feedback_status_valid",
		),
		db.CheckConstraint(
			"status = 'draft' OR otp_verified",
			name="ck_feedback_submitted_requires_otp",
		),
	)

	visit = db.relationship("Visit", back_populates="feedback")

	def mark_submitted(self, now: datetime | None = None) -> None:
		if not self.otp_verified:
			raise ValueError("Feedback cannot be submitted before OTP verification")
		self.status = "submitted"
		self.submitted_at = now or datetime.utcnow()

	@property
	def sentiment_score(self) -> int:
		score = self.rating_overall * 20
		if self.has_complaint:
			score -= {"critical": 40, "high": 25, "medium": 15, "low": 5}.get(self.complaint_severity, 0)
		return max(0, min(100, score))

	def public_payload(self) -> dict:
		return {
			"feedback_id": self.feedback_id,
			"visit_id": self.visit_id,
			"rating": {
				"overall": self.rating_overall,
				"categories": {name: getattr(self, f"rating_{name}") for name in RATING_CATEGORIES},
			},
			"comments": {
				"positive": self.comment_positive,
				"improvement": self.comment_improvement,
				"general": self.comment_general,
			},
			"complaint": {
				"has_complaint": self.has_complaint,
				"type": self.complaint_type,
				"severity": self.complaint_severity,
			},
			"otp_verification": {
				"verified": self.otp_verified,
				"attempts": self.otp_attempts,
				"verified_at": self.otp_verified_at.isoformat() if self.otp_verified_at else None,
			},
			"feedback_hash": self.feedback_hash,
			"sentiment_score": self.sentiment_score,
			"status": self.status,
			"submitted_at": self.submitted_at.isoformat() if self.submitted_at else None,
		}


class KeyedEntry(db.Model):
	__tablename__ = "keyed_entries"

	id = db.Column(db.Integer, primary_key=True)
	namespace = db.Column(db.String(40), nullable=False)
	key = db.Column(db.String(128), nullable=False)
	payload = db.Column(db.JSON, nullable=False)
	expires_at = db.Column(db.DateTime, nullable=False, index=True)
	created_at = db.Column(db.DateTime, default=datetime.utcnow, nullable=False)

	__table_args__ = (
		db.UniqueConstraint("namespace", "key", name="uq_keyed_entry"),
	)


class AuditLog(db.Model):
	__tablename__ = "audit_logs"

	id = db.Column(db.Integer, primary_key=True)
	actor_type = db.Column(db.String(20), nullable=True)
	actor_id = db.Column(db.String(120), nullable=True, index=True)
	action_type = db.Column(db.String(50), nullable=False, index=True)
	ip_address = db.Column(db.String(64), nullable=True)
	user_agent = db.Column(db.String(255), nullable=True)
	context_entity = db.Column(db.String(160), nullable=True)
	details = db.Column(db.JSON, nullable=True)
	timestamp = db.Column(db.DateTime, default=datetime.utcnow, nullable=False, index=True)


class LedgerAnchor(db.Model):
	__tablename__ = "ledger_anchors"

	id = db.Column(db.String(36), primary_key=True, default=generate_uuid)
	record_type = db.Column(db.String(50), nullable=False, index=True)
	record_id = db.Column(db.String(120), nullable=False, index=True)
	data_hash = db.Column(db.String(128), nullable=False, index=True)
	tx_reference = db.Column(db.String(128), nullable=True)
	block_reference = db.Column(db.String(128), nullable=True)
	status = db.Column(db.String(20), nullable=False, default="pending", index=True)
	anchored_at = db.Column(db.DateTime, default=datetime.utcnow, nullable=False, index=True)
	extra_metadata = db.Column("metadata", db.JSON, nullable=True)

	__table_args__ = (
		db.Index("ix_anchor_lookup", "record_type", "record_id", "anchored_at"),
		db.CheckConstraint(
			"status IN ('pending','anchored','unavailable','failed')",
			name="ck_ledger_anchor_status",
		),
	)

	def public_payload(self) -> dict:
		return {
			"record_type": self.record_type,
			"record_id": self.record_id,
			"data_hash": self.data_hash,
			"tx_reference": self.tx_reference,
			"block_reference": self.block_reference,
			"status": self.status,
			"anchored_at": self.anchored_at.isoformat() if self.anchored_at else None,
		}
