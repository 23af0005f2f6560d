"""HTTP routers; ``app.main.create_app`` includes each module's ``router``."""
