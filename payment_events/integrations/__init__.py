"""Payment provider, webhook and notification integrations."""
