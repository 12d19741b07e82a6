"""Service layer for payments, invoices, subscriptions and reminders."""
