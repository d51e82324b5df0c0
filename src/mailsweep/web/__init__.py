"""Web interface for mailsweep."""
