# Schedula test suite (pytest, in-process Flask app on SQLite)
