"""CareBot: a multi-tenant WhatsApp assistant for healthcare providers.

Architecture Overview
=====================

One webhook endpoint serves many organizations (tenants).  Each delivery is:

1. **resolved** to a tenant (header, query/path parameter, receiving phone
   number, message context, default) and its cached configuration,
2. **acknowledged** immediately, then processed in the background under a
   per-contact lock,
3. **routed**: form replies go to the matching flow handler, media is
   re-hosted and logged, text goes through the LangGraph intent router.

The intent router (``carebot/agent.py``) binds five intent functions to
Claude: appointment_flow, support_flow, knowledge_lookup, small_talk and
symptom_assessment.  Handlers write tenant-scoped records and return a
notification that is published as a separate step.

Package Structure
-----------------
- ``carebot/agent.py`` — LangGraph intent router
- ``carebot/webhook.py`` — per-delivery processing
- ``carebot/bootstrap.py`` — service wiring shared by server and CLI
- ``carebot/config.py`` — configuration from env / SSM
- ``carebot/models.py`` — pydantic domain records
- ``carebot/prompts.py`` — prompt templates
- ``carebot/server.py`` — FastAPI application
- ``carebot/main.py`` — CLI chat against a seeded in-memory store
- ``carebot/api/`` — webhook, health and admin routes, schemas
- ``carebot/services/`` — store, caches, tenants, contacts, knowledge,
  notifications, WhatsApp client, media, metrics
- ``carebot/tools/`` — flow handlers, form parsing, symptom triage
"""
