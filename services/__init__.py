"""
AsarHook Services Layer

Host-facing operations that sit between the API/CLI and the core modules.
This layer:
1. Turns core exceptions into uniform {"success": ...} dicts
2. Reads settings; core modules never do
3. Can be called by routes, CLI, or tests
4. Never imports from api.routes

Architecture:
    API Routes / CLI → Services → Core

Usage:
    from services.injector_service import InjectorService
    from services.registry_service import RegistryService
    from services.target_service import TargetService
"""

__all__ = [
    "InjectorService",
    "RegistryService",
    "TargetService",
]


def __getattr__(name):
    """Lazy import to avoid circular dependencies"""
    if name == "InjectorService":
        from services.injector_service import InjectorService
        return InjectorService
    elif name == "RegistryService":
        from services.registry_service import RegistryService
        return RegistryService
    elif name == "TargetService":
        from services.target_service import TargetService
        return TargetService
    raise AttributeError(f"module 'services' has no attribute '{name}'")
