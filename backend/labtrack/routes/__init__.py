from importlib import import_module

modules = [
    'auth',
    'users',
    'labs',
    'asset_types',
    'equipment',
    'transfers',
    'issues',
    'transitions',
    'guards',
    'notifications',
    'activity',
    'realtime',
]

for m in modules:
    import_module(f'.{m}', __name__)

__all__ = modules
