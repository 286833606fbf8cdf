"""Run the grades service: ``python -m unigrades``."""

from .session_manager.manager import main

main()
