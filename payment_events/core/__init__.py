"""
Core payment-event logic: ledger, jobs, quotas, checkout and charges.

Modules are imported directly (``payment_events.core.jobs`` etc.); the
integrations package depends on several of them.
"""
