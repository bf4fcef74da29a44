"""Multi-tenant WhatsApp customer-service admin API."""
