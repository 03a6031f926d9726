"""
BeanGate Backend: Services Layer
==================================

What:  Gateway business logic between the routes (HTTP) and the database.
How:   Services take their collaborators as constructor arguments; the app
       lifespan builds one instance of each and stores them on app.state.

Service Inventory:
    - CredentialVault:      AES-256-GCM encrypt/decrypt/mask of provider keys
    - ResponseNormalizer:   raw provider text → AnalysisResult
    - QuotaLedger:          daily free-tier counters and retention sweep
    - CredentialStore:      per-user stored keys and preferred provider
    - FileImageStore:       uploaded images by reference
    - AnalysisOrchestrator: the analyze / get_usage entry points
"""
