"""Domain models and error taxonomy shared by every engine component."""
