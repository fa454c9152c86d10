"""Core data models for users, the reward ledger, waste reports and notifications."""
import uuid
from datetime import datetime

from flask_login import UserMixin
from sqlalchemy.exc import IntegrityError

from extensions import db


def generate_uuid() -> str:
	return str(uuid.uuid4())


TRANSACTION_TYPES: tuple[str, ...] = (
	"earned_report",
	"earned_collect",
	"redeemed",
)

REPORT_STATUSES: tuple[str, ...] = (
	"pending",
	"in_progress",
	"verified",
)

NOTIFICATION_TYPES: tuple[str, ...] = (
	"reward",
	"task",
	"redemption",
	"system",
)


class User(UserMixin, db.Model):
	__tablename__ = "users"

	id = db.Column(db.String(36), primary_key=True, default=generate_uuid)
	email = db.Column(db.String(255), unique=True, nullable=False, index=True)
	name = db.Column(db.String(255), nullable=False, default="Anonymous User")
	created_at = db.Column(db.DateTime, default=datetime.utcnow, nullable=False)
	last_login_at = db.Column(db.DateTime, nullable=True)

	reward = db.relationship("Reward", back_populates="user", uselist=False)
	transactions = db.relationship("Transaction", back_populates="user", lazy="dynamic")
	notifications = db.relationship("Notification", back_populates="user", lazy="dynamic")
	reports = db.relationship(
		"Report",
		back_populates="reporter",
		foreign_keys="Report.reporter_id",
		lazy="dynamic",
	)
	collections = db.relationship("CollectedWaste", back_populates="collector", lazy="dynamic")

	@staticmethod
	def get_or_create(email: str, name: str | None = None):
		"""Find a user by email or create one; a concurrent creator is settled by the unique email."""
		normalized = (email or "").strip().lower()
		user = User.query.filter_by(email=normalized).first()
		if user:
			return user
		user = User(email=normalized, name=(name or "").strip() or "Anonymous User")
		try:
			with db.session.begin_nested():
				db.session.add(user)
		except IntegrityError:
			user = User.query.filter_by(email=normalized).one()
		db.session.commit()
		return user

	def public_payload(self) -> dict:
		return {
			"id": self.id,
			"email": self.email,
			"name": self.name,
			"created_at": self.created_at.isoformat() if self.created_at else None,
		}


class Transaction(db.Model):
	"""Immutable ledger entry. Amounts are stored positive; the type carries the sign."""

	__tablename__ = "transactions"

	id = db.Column(db.Integer, primary_key=True)
	user_id = db.Column(db.String(36), db.ForeignKey("users.id"), nullable=False, index=True)
	type = db.Column(db.String(20), nullable=False, index=True)
	amount = db.Column(db.Integer, nullable=False)
	description = db.Column(db.String(500), nullable=True)
	reference = db.Column(db.String(120), nullable=True, unique=True)
	date = db.Column(db.DateTime, default=datetime.utcnow, nullable=False, index=True)

	__table_args__ = (
		db.CheckConstraint(
			"type IN ('earned_report','earned_collect','redeemed')",
			name="ck_transaction_type_valid",
		),
		db.CheckConstraint("amount >= 0", name="ck_transaction_amount_non_negative"),
		db.Index("ix_transactions_user_date", "user_id", "date"),
	)

	user = db.relationship("User", back_populates="transactions")

	def public_payload(self) -> dict:
		return {
			"id": self.id,
			"type": self.type,
			"amount": self.amount,
			"description": self.description,
			"date": self.date.isoformat() if self.date else None,
		}


class Reward(db.Model):
	"""Per-user point total cached from the transaction ledger."""

	__tablename__ = "rewards"

	id = db.Column(db.Integer, primary_key=True)
	user_id = db.Column(db.String(36), db.ForeignKey("users.id"), nullable=False, unique=True)
	name = db.Column(db.String(255), nullable=False, default="Default Reward")
	collection_info = db.Column(db.String(500), nullable=False, default="Default Collection Info")
	points = db.Column(db.Integer, nullable=False, default=0)
	level = db.Column(db.Integer, nullable=False, default=1)
	is_available = db.Column(db.Boolean, nullable=False, default=True)
	created_at = db.Column(db.DateTime, default=datetime.utcnow, nullable=False)
	updated_at = db.Column(db.DateTime, default=datetime.utcnow, nullable=False)

	__table_args__ = (
		db.CheckConstraint("points >= 0", name="ck_reward_points_non_negative"),
		db.CheckConstraint("level >= 1", name="ck_reward_level_positive"),
	)

	user = db.relationship("User", back_populates="reward")

	def public_payload(self) -> dict:
		return {
			"points": self.points,
			"level": self.level,
			"is_available": self.is_available,
			"updated_at": self.updated_at.isoformat() if self.updated_at else None,
		}


class RewardItem(db.Model):
	"""Catalog entry a user can redeem points against."""

	__tablename__ = "reward_items"

	id = db.Column(db.Integer, primary_key=True)
	name = db.Column(db.String(255), unique=True, nullable=False)
	cost = db.Column(db.Integer, nullable=False)
	description = db.Column(db.String(500), nullable=True)
	collection_info = db.Column(db.String(500), nullable=True)
	is_available = db.Column(db.Boolean, nullable=False, default=True, index=True)
	created_at = db.Column(db.DateTime, default=datetime.utcnow, nullable=False)

	__table_args__ = (db.CheckConstraint("cost > 0", name="ck_reward_item_cost_positive"),)

	@staticmethod
	def get_or_create(name: str, cost: int, description: str = "", collection_info: str = ""):
		item = RewardItem.query.filter_by(name=name).first()
		if item:
			return item
		item = RewardItem(name=name, cost=cost, description=description, collection_info=collection_info)
		db.session.add(item)
		db.session.commit()
		return item

	def public_payload(self) -> dict:
		return {
			"id": self.id,
			"name": self.name,
			"cost": self.cost,
			"description": self.description,
			"collection_info": self.collection_info,
		}


class Report(db.Model):
	__tablename__ = "reports"

	id = db.Column(db.Integer, primary_key=True)
	reporter_id = db.Column(db.String(36), db.ForeignKey("users.id"), nullable=False, index=True)
	location = db.Column(db.Text, nullable=False)
	waste_type = db.Column(db.String(255), nullable=False)
	amount = db.Column(db.String(255), nullable=False)
	image_url = db.Column(db.Text, nullable=True)
	verification_result = db.Column(db.JSON, nullable=True)
	status = db.Column(db.String(20), nullable=False, default="pending", index=True)
	collector_id = db.Column(db.String(36), db.ForeignKey("users.id"), nullable=True, index=True)
	created_at = db.Column(db.DateTime, default=datetime.utcnow, nullable=False, index=True)
	updated_at = db.Column(
		db.DateTime,
		default=datetime.utcnow,
		onupdate=datetime.utcnow,
		nullable=False,
	)

	__table_args__ = (
		db.CheckConstraint(
			"status IN ('pending','in_progress','verified')",
			name="ck_report_status_valid",
		),
	)

	reporter = db.relationship("User", back_populates="reports", foreign_keys=[reporter_id])
	collector = db.relationship("User", foreign_keys=[collector_id])
	collection = db.relationship("CollectedWaste", back_populates="report", uselist=False)

	def public_payload(self) -> dict:
		return {
			"id": self.id,
			"location": self.location,
			"waste_type": self.waste_type,
			"amount": self.amount,
			"image_url": self.image_url,
			"verification_result": self.verification_result,
			"status": self.status,
			"collector_id": self.collector_id,
			"date": self.created_at.date().isoformat() if self.created_at else None,
			"created_at": self.created_at.isoformat() if self.created_at else None,
		}


class CollectedWaste(db.Model):
	__tablename__ = "collected_wastes"

	id = db.Column(db.Integer, primary_key=True)
	report_id = db.Column(db.Integer, db.ForeignKey("reports.id"), nullable=False, unique=True)
	collector_id = db.Column(db.String(36), db.ForeignKey("users.id"), nullable=False, index=True)
	collection_date = db.Column(db.DateTime, default=datetime.utcnow, nullable=False, index=True)
	status = db.Column(db.String(20), nullable=False, default="verified")
	verification = db.Column(db.JSON, nullable=True)

	__table_args__ = (
		db.CheckConstraint("status IN ('verified')", name="ck_collected_waste_status"),
	)

	report = db.relationship("Report", back_populates="collection")
	collector = db.relationship("User", back_populates="collections")


class Notification(db.Model):
	__tablename__ = "notifications"

	id = db.Column(db.Integer, primary_key=True)
	user_id = db.Column(db.String(36), db.ForeignKey("users.id"), nullable=False, index=True)
	message = db.Column(db.String(500), nullable=False)
	type = db.Column(db.String(20), nullable=False, default="system")
	is_read = db.Column(db.Boolean, nullable=False, default=False, index=True)
	created_at = db.Column(db.DateTime, default=datetime.utcnow, nullable=False, index=True)

	__table_args__ = (
		db.CheckConstraint(
			"type IN ('reward','task','redemption','system')",
			name="ck_notification_type_valid",
		),
		db.Index("ix_notifications_user_unread", "user_id", "is_read"),
	)

	user = db.relationship("User", back_populates="notifications")

	def public_payload(self) -> dict:
		return {
			"id": self.id,
			"message": self.message,
			"type": self.type,
			"is_read": self.is_read,
			"created_at": self.created_at.isoformat() if self.created_at else None,
		}
