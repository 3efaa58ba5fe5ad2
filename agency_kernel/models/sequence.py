"""
Module: agency_kernel.models.sequence
Responsibility: Named counter rows backing document number allocation.
Architecture position: Kernel > Models.  May import from db/base.py only.

Invariants enforced:
    - One row per sequence name (uq_sequence_counter_name).
    - current_value only ever grows; it is incremented under a row lock.
"""

from sqlalchemy import BigInteger, String, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from agency_kernel.db.base import Base


class SequenceCounter(Base):
    """
    Sequence counter table.

    Each row represents a named sequence with its current value.
    """

    __tablename__ = "sequence_counters"

    __table_args__ = (
        UniqueConstraint("name", name="uq_sequence_counter_name"),
    )

    name: Mapped[str] = mapped_column(String(80), nullable=False)

    current_value: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)

    def __repr__(self) -> str:
        return f"<SequenceCounter {self.name}={self.current_value}>"
