from . import api, bootstrap, reset, status, validate

__all__ = ['api', 'bootstrap', 'reset', 'status', 'validate']
