"""PromptForge - prompt manifest compiler for image dataset generation."""

__author__ = 'PromptForge Contributors'
__version__ = '0.1.0'

from .promptforge import GenerationJob, main, run
from .orchestrator import BatchOrchestrator, BatchReport, BatchState
from .session import Session
from . import config

__all__ = ['GenerationJob', 'BatchOrchestrator', 'BatchReport', 'BatchState', 'Session', 'main', 'run', 'config']
