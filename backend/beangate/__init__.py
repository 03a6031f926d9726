"""
BeanGate Backend: AI Bean-Analysis Gateway
============================================

What:  Routes coffee bag photos to vision-capable language models (OpenAI,
       Claude, Gemini) with the platform's key on a metered free tier or the
       user's own encrypted key, and normalizes every answer into one shape.

Architecture Note:

    ┌─────────────────────────────────────┐
    │           Routes (API Layer)        │  ← HTTP concerns only
    ├─────────────────────────────────────┤
    │   Services (Orchestrator, Ledger,   │  ← business rules
    │   Credential Store, Vault)          │
    ├─────────────────────────────────────┤
    │   Providers (Registry, House Blend, │  ← outbound vision calls
    │   OpenAI / Claude / Gemini clients) │
    ├─────────────────────────────────────┤
    │       Models & Schemas (Data)       │  ← SQLAlchemy ORM + Pydantic
    ├─────────────────────────────────────┤
    │        Database (Persistence)       │  ← Async SQLAlchemy sessions
    └─────────────────────────────────────┘
"""

__version__ = "1.0.0"
