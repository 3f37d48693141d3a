# ui/__init__.py
"""
UI Module - Rich-based Terminal Output
"""

from .dashboard import DashboardEventLog, build_layout, render_once, run_dashboard

__all__ = [
    'DashboardEventLog',
    'build_layout',
    'render_once',
    'run_dashboard',
]
