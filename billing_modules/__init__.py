"""
Billing Modules.

Thin orchestration over the billing kernel and engines.  Each module holds
its domain models, ORM models, workflow and a service facade.

Modules:
- Invoicing: drafts, issue, cancellation, payments, numbering
"""
