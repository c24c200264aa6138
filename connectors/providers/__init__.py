"""
Concrete providers.  Modules are imported lazily by the registry.
"""
