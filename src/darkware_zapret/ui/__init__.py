"""Qt tray user interface."""
