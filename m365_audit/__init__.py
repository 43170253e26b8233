"""
M365 Tenant Audit Pipeline
==========================
A read-only investigation and audit pipeline for Microsoft 365 tenants.
Fans out queries across audit, sign-in, directory and configuration sources,
normalizes the results, flags risk against compliance-mapped rules and
exports JSON / CSV / Markdown / HTML reports.

WARNING: This tool operates in STRICT READ-ONLY mode.
         No write operations will be performed against the tenant.
"""

__version__ = "1.0.0"
__mode__ = "READ-ONLY"
