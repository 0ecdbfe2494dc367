from .app import create_app, serve_status_app

__all__ = ['create_app', 'serve_status_app']
