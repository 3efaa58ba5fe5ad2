"""
Agency Kernel - debit note aggregation and task linkage.

Billable task records of a job order are grouped into debit notes with:
- At most one debit note per task record
- Atomic link / unlink of every covered record
- Totals always equal to the sum of the detail lines
- Optimistic concurrency on every mutable row
"""

__version__ = "0.1.0"
