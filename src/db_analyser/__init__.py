"""
Database Analyser - schema, relationship and usage analysis for SQL databases
Copyright (c) 2025 Dmitry Solonnikov
Licensed under MIT License - see LICENSE file for details
"""
from .cancellation import CancellationToken
from .config import AnalysisConfig, load_config
from .orchestrator import AnalysisOrchestrator
from .progress import ProgressEvent
from .session import SessionManager, SessionState

__version__ = '0.2.0'

__all__ = [
    'AnalysisConfig', 'AnalysisOrchestrator', 'CancellationToken', 'ProgressEvent',
    'SessionManager', 'SessionState', 'load_config',
]
