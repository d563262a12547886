"""
Persistence port for transactions.

The reconciliation engine talks to storage only through this class, so the
session handling (commit, rollback, refresh) lives in one place.
"""
from datetime import datetime
from typing import Optional, List, Tuple, Dict, Any

from sqlalchemy import func, or_
from sqlalchemy.orm import Session

from app import models


SORTABLE_COLUMNS = {
    "created_at": models.Transaction.created_at,
    "processed_at": models.Transaction.processed_at,
    "amount": models.Transaction.amount,
    "status": models.Transaction.status,
}

# Sales whose funds were captured, refunded or not
CAPTURED_STATUSES = (models.COMPLETED, models.PARTIALLY_REFUNDED, models.REFUNDED)

# Closed without ever capturing funds: an event that carries a capture id cannot belong to these
CLOSED_UNCAPTURED = (models.CANCELLED, models.FAILED)


class TransactionRepository:
    def __init__(self, db: Session):
        self.db = db

    # -- lookups ---------------------------------------------------------

    def get(self, transaction_id: str) -> Optional[models.Transaction]:
        return self.db.query(models.Transaction).filter(
            models.Transaction.id == transaction_id
        ).first()

    def get_for_merchant(self, transaction_id: str, merchant_id: str) -> Optional[models.Transaction]:
        return self.db.query(models.Transaction).filter(
            models.Transaction.id == transaction_id,
            models.Transaction.merchant_id == merchant_id,
        ).first()

    def find_by_capture_id(self, capture_id: str) -> Optional[models.Transaction]:
        return self.db.query(models.Transaction).filter(
            models.Transaction.gateway_capture_id == capture_id,
            models.Transaction.type != models.REFUND,
        ).first()

    def find_by_order_id(self, order_id: str, capture_id: Optional[str] = None) -> Optional[models.Transaction]:
        """
        Most recent primary transaction for a gateway order id.

        When the event also names a capture id, transactions that closed without
        capturing, or that settled under a different capture id, are skipped:
        one order can back several payment attempts.
        """
        query = self.db.query(models.Transaction).filter(
            models.Transaction.gateway_order_id == order_id,
            models.Transaction.type != models.REFUND,
        )
        if capture_id:
            query = query.filter(
                models.Transaction.status.notin_(CLOSED_UNCAPTURED),
                or_(
                    models.Transaction.gateway_capture_id.is_(None),
                    models.Transaction.gateway_capture_id == capture_id,
                ),
            )
        return query.order_by(models.Transaction.created_at.desc()).first()

    def find_refund(self, refund_id: str) -> Optional[models.Transaction]:
        return self.db.query(models.Transaction).filter(
            models.Transaction.gateway_refund_id == refund_id,
            models.Transaction.type == models.REFUND,
        ).first()

    def refunds_for(self, transaction_id: str) -> List[models.Transaction]:
        return self.db.query(models.Transaction).filter(
            models.Transaction.parent_transaction_id == transaction_id,
            models.Transaction.type == models.REFUND,
        ).order_by(models.Transaction.created_at).all()

    def refunded_total(self, transaction_id: str) -> float:
        total = self.db.query(func.coalesce(func.sum(models.Transaction.amount), 0.0)).filter(
            models.Transaction.parent_transaction_id == transaction_id,
            models.Transaction.type == models.REFUND,
        ).scalar()
        return float(total or 0.0)

    # -- webhook event ledger -------------------------------------------

    def event_seen(self, gateway: str, event_id: str) -> bool:
        return self.db.query(models.WebhookEvent.id).filter(
            models.WebhookEvent.gateway == gateway,
            models.WebhookEvent.event_id == event_id,
        ).first() is not None

    def add_event(self, gateway: str, event_id: str, event_type: str,
                  transaction_id: Optional[str], outcome: str):
        self.db.add(models.WebhookEvent(
            gateway=gateway,
            event_id=event_id,
            event_type=event_type,
            transaction_id=transaction_id,
            outcome=outcome,
        ))

    # -- unit of work ----------------------------------------------------

    def add(self, obj):
        self.db.add(obj)

    def commit(self):
        self.db.commit()

    def rollback(self):
        self.db.rollback()

    def refresh(self, obj):
        self.db.refresh(obj)

    # -- merchant queries ------------------------------------------------

    def _merchant_query(self, merchant_id: str, start_date: Optional[datetime] = None,
                        end_date: Optional[datetime] = None):
        query = self.db.query(models.Transaction).filter(
            models.Transaction.merchant_id == merchant_id
        )
        if start_date:
            query = query.filter(models.Transaction.created_at >= start_date)
        if end_date:
            query = query.filter(models.Transaction.created_at <= end_date)
        return query

    def search(
        self,
        merchant_id: str,
        status: Optional[str] = None,
        type: Optional[str] = None,
        payment_method: Optional[str] = None,
        gateway: Optional[str] = None,
        sale_id: Optional[str] = None,
        start_date: Optional[datetime] = None,
        end_date: Optional[datetime] = None,
        search: Optional[str] = None,
        page: int = 1,
        limit: int = 20,
        sort_by: str = "created_at",
        sort_order: str = "desc",
    ) -> Tuple[List[models.Transaction], int]:
        query = self._merchant_query(merchant_id, start_date, end_date)

        if status:
            query = query.filter(models.Transaction.status == status)
        if type:
            query = query.filter(models.Transaction.type == type)
        if payment_method:
            query = query.filter(models.Transaction.payment_method == payment_method)
        if gateway:
            query = query.filter(models.Transaction.gateway == gateway)
        if sale_id:
            query = query.filter(models.Transaction.sale_id == sale_id)
        if search:
            pattern = f"%{search}%"
            query = query.filter(or_(
                models.Transaction.id.ilike(pattern),
                models.Transaction.description.ilike(pattern),
                models.Transaction.customer_name.ilike(pattern),
                models.Transaction.customer_email.ilike(pattern),
                models.Transaction.notes.ilike(pattern),
            ))

        total = query.count()

        column = SORTABLE_COLUMNS.get(sort_by, models.Transaction.created_at)
        query = query.order_by(column.asc() if sort_order == "asc" else column.desc())
        items = query.offset((page - 1) * limit).limit(limit).all()
        return items, total

    def statistics(self, merchant_id: str, start_date: Optional[datetime] = None,
                   end_date: Optional[datetime] = None) -> Dict[str, Any]:
        """
        Revenue figures cover captured sales (COMPLETED and refunded ones);
        REFUND rows are reported separately and never count as revenue.
        """
        scoped = self._merchant_query(merchant_id, start_date, end_date)
        sales = scoped.filter(
            models.Transaction.status.in_(CAPTURED_STATUSES),
            models.Transaction.type != models.REFUND,
        )

        totals = sales.with_entities(
            func.coalesce(func.sum(models.Transaction.amount), 0.0),
            func.coalesce(func.sum(models.Transaction.net_amount), 0.0),
            func.coalesce(func.sum(models.Transaction.fee_amount), 0.0),
            func.count(models.Transaction.id),
            func.coalesce(func.avg(models.Transaction.amount), 0.0),
            func.coalesce(func.min(models.Transaction.amount), 0.0),
            func.coalesce(func.max(models.Transaction.amount), 0.0),
        ).one()

        refunds = scoped.filter(
            models.Transaction.type == models.REFUND,
            models.Transaction.status == models.COMPLETED,
        ).with_entities(
            func.coalesce(func.sum(models.Transaction.amount), 0.0),
            func.count(models.Transaction.id),
        ).one()

        by_method = sales.with_entities(
            models.Transaction.payment_method,
            func.count(models.Transaction.id),
            func.coalesce(func.sum(models.Transaction.amount), 0.0),
            func.coalesce(func.sum(models.Transaction.net_amount), 0.0),
        ).group_by(models.Transaction.payment_method).all()

        by_type = scoped.filter(models.Transaction.status.in_(CAPTURED_STATUSES)).with_entities(
            models.Transaction.type,
            func.count(models.Transaction.id),
            func.coalesce(func.sum(models.Transaction.amount), 0.0),
        ).group_by(models.Transaction.type).all()

        by_status = scoped.with_entities(
            models.Transaction.status,
            func.count(models.Transaction.id),
            func.coalesce(func.sum(models.Transaction.amount), 0.0),
        ).group_by(models.Transaction.status).all()

        customer_total = func.sum(models.Transaction.amount)
        top_customers = sales.filter(
            models.Transaction.customer_email.isnot(None),
            models.Transaction.customer_email != "",
        ).with_entities(
            models.Transaction.customer_email,
            func.max(models.Transaction.customer_name),
            func.count(models.Transaction.id),
            customer_total,
            func.avg(models.Transaction.amount),
        ).group_by(models.Transaction.customer_email).order_by(customer_total.desc()).limit(10).all()

        day = func.date(models.Transaction.created_at)
        daily = sales.with_entities(
            day,
            func.count(models.Transaction.id),
            func.coalesce(func.sum(models.Transaction.amount), 0.0),
        ).group_by(day).order_by(day).all()

        recent = scoped.order_by(models.Transaction.created_at.desc()).limit(10).all()

        return {
            "total_amount": round(float(totals[0]), 2),
            "total_net_amount": round(float(totals[1]), 2),
            "total_fees": round(float(totals[2]), 2),
            "transaction_count": int(totals[3]),
            "average_amount": round(float(totals[4]), 2),
            "min_amount": round(float(totals[5]), 2),
            "max_amount": round(float(totals[6]), 2),
            "total_refunded": round(float(refunds[0]), 2),
            "refund_count": int(refunds[1]),
            "payment_methods": [
                {"payment_method": method, "count": count, "amount": round(float(amount), 2),
                 "net_amount": round(float(net), 2)}
                for method, count, amount, net in by_method
            ],
            "type_breakdown": [
                {"type": type_, "count": count, "amount": round(float(amount), 2)}
                for type_, count, amount in by_type
            ],
            "status_breakdown": [
                {"status": status, "count": count, "amount": round(float(amount), 2)}
                for status, count, amount in by_status
            ],
            "top_customers": [
                {"email": email, "name": name, "transaction_count": count,
                 "total_amount": round(float(total), 2), "average_amount": round(float(average), 2)}
                for email, name, count, total, average in top_customers
            ],
            "time_series": [
                {"date": str(date), "count": count, "amount": round(float(amount), 2)}
                for date, count, amount in daily
            ],
            "recent_transactions": recent,
        }
