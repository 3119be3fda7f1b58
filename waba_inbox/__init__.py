"""Multi-tenant WhatsApp Business inbox: webhook ingestion service."""
