from sqlalchemy.orm import declarative_base
from sqlalchemy import (
    CheckConstraint,
    Column,
    Float,
    ForeignKey,
    Integer,
    String,
    UniqueConstraint,
)


Base = declarative_base()

# Competition.status
COMPETITION_OPEN = "open"
COMPETITION_CLOSED = "closed"

# PendingOrder.status
ORDER_CREATED = "created"
ORDER_FULFILLED = "fulfilled"
ORDER_FAILED = "failed"
ORDER_CANCELED = "canceled"


# ----------------------------
# ORM models
# ----------------------------
class Competition(Base):
    __tablename__ = "competitions"
    id = Column(Integer, primary_key=True, autoincrement=True)
    name = Column(String, nullable=False)
    description = Column(String, nullable=False, default="")
    image = Column(String, nullable=True)

    capacity = Column(Integer, nullable=False)
    sold_count = Column(Integer, nullable=False, default=0)
    instant_win_count = Column(Integer, nullable=False, default=0)

    ticket_price = Column(Integer, nullable=False)  # minor units
    currency = Column(String, nullable=False, default="gbp")

    # random | sequential, fixed at creation
    numbering = Column(String, nullable=False, default="random")

    # open | closed
    status = Column(String, nullable=False, default=COMPETITION_OPEN)
    end_winner_ticket_id = Column(Integer, nullable=True)

    created_at = Column(Float, nullable=False)
    closed_at = Column(Float, nullable=True)
    drawn_at = Column(Float, nullable=True)

    __table_args__ = (
        CheckConstraint("capacity > 0", name="ck_competitions_capacity"),
        CheckConstraint(
            "sold_count >= 0 AND sold_count <= capacity",
            name="ck_competitions_sold_count",
        ),
    )


class InstantWin(Base):
    __tablename__ = "instant_wins"
    competition_id = Column(
        Integer, ForeignKey("competitions.id"), primary_key=True
    )
    number = Column(Integer, primary_key=True)


class Ticket(Base):
    __tablename__ = "tickets"
    id = Column(Integer, primary_key=True, autoincrement=True)
    competition_id = Column(
        Integer, ForeignKey("competitions.id"), nullable=False, index=True
    )
    owner_id = Column(String, nullable=False, index=True)
    number = Column(Integer, nullable=False)

    # instant_win | non_win | end_winner
    result = Column(String, nullable=False)

    # external reference of the paying order; NULL for admin grants
    order_ref = Column(String, nullable=True, index=True)
    created_at = Column(Float, nullable=False)

    __table_args__ = (
        UniqueConstraint(
            "competition_id", "number", name="uq_tickets_competition_number"
        ),
    )


class PendingOrder(Base):
    __tablename__ = "pending_orders"
    # provider payment session id, doubles as the idempotency key
    external_reference = Column(String, primary_key=True)
    order_id = Column(String, nullable=False, unique=True)
    competition_id = Column(Integer, nullable=False, index=True)
    owner_id = Column(String, nullable=False)
    quantity = Column(Integer, nullable=False)
    amount = Column(Integer, nullable=False)  # minor units
    currency = Column(String, nullable=False, default="gbp")

    # created | fulfilled | failed | canceled
    status = Column(String, nullable=False, default=ORDER_CREATED)
    failure_reason = Column(String, nullable=True)

    created_at = Column(Float, nullable=False)
    settled_at = Column(Float, nullable=True)
