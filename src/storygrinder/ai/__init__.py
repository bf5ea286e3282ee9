"""Provider clients, token budgeting, and canonical stream events."""
