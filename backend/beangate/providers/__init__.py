"""
BeanGate Backend: Provider Clients
====================================

What:  One client per vision backend plus the House Blend routing facade, all
       implementing the ProviderClient contract, and the registry that maps a
       ProviderIdentity to its client.

Inventory:
    - identity.py:     ProviderIdentity enum and ProviderDescriptor
    - base.py:         ProviderClient contract and the shared analysis prompt
    - openai_client.py, claude_client.py, gemini_client.py: real backends
    - house_blend.py:  facade that substitutes the platform's own credential
    - registry.py:     ProviderRegistry (resolve, describe_all)
"""
