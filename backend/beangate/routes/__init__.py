"""
BeanGate Backend: API Routes Package
======================================

What:  HTTP route handlers; thin wrappers over the gateway services.

Route Inventory:
    - analyze.py:      POST  /api/analyze                 (run an analysis)
                       GET   /api/analyze/providers       (catalog + usage)
                       GET   /api/analyze                 (my saved analyses)
                       GET   /api/analyze/{id}
                       PATCH /api/analyze/{id}/coffee     (link to catalog coffee)
    - credentials.py:  GET   /api/keys/usage              (free-tier usage)
                       GET   /api/keys                    (masked key list)
                       PUT   /api/keys/{provider}
                       DELETE /api/keys/{provider}
                       POST  /api/keys/{provider}/test
                       PATCH /api/keys/preferred
    - images.py:       POST  /api/images                  (upload, returns image_ref)
    - health.py:       GET   /health
"""
