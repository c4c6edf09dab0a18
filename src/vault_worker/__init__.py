"""
Uploaded document → Classification → Standardization → Verified insight → Monthly analytics

A worker pipeline that turns uploaded UK financial documents (payslips,
account statements, HMRC correspondence) into integrity-checked canonical
records and rebuilds per-user monthly analytics snapshots from them.
"""

__version__ = "0.1.0"
