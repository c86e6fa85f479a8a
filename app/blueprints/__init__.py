"""
Commitment Ledger
Blueprint registry.
"""


def all_blueprints():
    """Every API blueprint, in registration order."""
    from app.blueprints.change_requests_bp import change_requests_bp
    from app.blueprints.clients_bp import clients_bp
    from app.blueprints.commitments_bp import commitments_bp
    from app.blueprints.health_bp import health_bp
    from app.blueprints.public_bp import public_bp
    from app.blueprints.settings_bp import settings_bp

    return [
        health_bp,
        commitments_bp,
        change_requests_bp,
        clients_bp,
        settings_bp,
        public_bp,
    ]
