"""
mailsweep

A local-first mailbox sweeper that scans a mailbox over IMAPS,
classifies each message as spam, newsletter or keep using a local
LLM (Ollama), and semi-automates unsubscribing from newsletters.
"""

__version__ = "1.0.0"
__app_name__ = "mailsweep"
