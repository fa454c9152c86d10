"""Domain services: ledger, rewards, report lifecycle, notifications and integrations."""
