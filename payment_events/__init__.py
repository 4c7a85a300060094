"""Payment-event processing core: webhooks, purchase ledger, job pipeline and quotas."""

__version__ = "0.1.0"
