from sqlalchemy import CheckConstraint, UniqueConstraint
from leadbilling.extensions import db
from leadbilling.utils.helpers import utcnow

SOURCE_QUOTA = "quota"
SOURCE_PAID = "paid"

class LeadClaim(db.Model):
    __tablename__ = "lead_claims"

    id = db.Column(db.Integer, primary_key=True)
    account_id = db.Column(db.Integer, db.ForeignKey("accounts.id", ondelete="RESTRICT"), nullable=False, index=True)
    lead_id = db.Column(db.String(64), nullable=False)

    payment_required = db.Column(db.Boolean, nullable=False, default=False)
    credit_source = db.Column(db.String(8), nullable=False, default=SOURCE_QUOTA)
    payment_id = db.Column(db.Integer, db.ForeignKey("payments.id", ondelete="SET NULL"), nullable=True)
    charge_reference = db.Column(db.String(64), nullable=True)

    created_at = db.Column(db.DateTime, nullable=False, default=utcnow)

    __table_args__ = (
        # Claiming is idempotent per lead
        UniqueConstraint("account_id", "lead_id", name="uq_lead_claims_account_lead"),
        CheckConstraint("credit_source IN ('quota','paid')", name="ck_lead_claims_source_valid"),
    )

    def __repr__(self) -> str:
        return f"<LeadClaim account_id={self.account_id} lead_id={self.lead_id!r} source={self.credit_source!r}>"
