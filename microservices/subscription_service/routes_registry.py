"""
Subscription Service Routes Registry

Defines service metadata and the route table served by main.py.
"""

SERVICE_METADATA = {
    "service_name": "subscription",
    "version": "1.0.0",
    "tags": ["subscription", "billing", "dunning", "microservice"],
    "capabilities": [
        "subscription_lifecycle",
        "plan_changes",
        "proration",
        "pause_management",
        "dunning",
        "billing_sweeps",
    ]
}

# Route definitions for API documentation
ROUTES = [
    # Health endpoints
    {"path": "/health", "methods": ["GET"], "description": "Health check"},
    {"path": "/health/detailed", "methods": ["GET"], "description": "Detailed health check"},

    # Subscription lifecycle
    {"path": "/api/v1/subscriptions", "methods": ["POST"], "description": "Create subscription"},
    {"path": "/api/v1/subscriptions", "methods": ["GET"], "description": "List subscriptions"},
    {"path": "/api/v1/subscriptions/expiring", "methods": ["GET"], "description": "Subscriptions expiring soon"},
    {"path": "/api/v1/subscriptions/bulk-cancel", "methods": ["POST"], "description": "Bulk cancel subscriptions"},
    {"path": "/api/v1/subscriptions/{subscription_id}", "methods": ["GET"], "description": "Get subscription"},
    {"path": "/api/v1/subscriptions/{subscription_id}/cancel", "methods": ["POST"], "description": "Cancel subscription"},
    {"path": "/api/v1/subscriptions/{subscription_id}/resume", "methods": ["POST"], "description": "Withdraw pending cancellation"},
    {"path": "/api/v1/subscriptions/{subscription_id}/renew", "methods": ["POST"], "description": "Renew subscription"},
    {"path": "/api/v1/subscriptions/{subscription_id}/expire", "methods": ["POST"], "description": "Expire subscription"},

    # Pausing
    {"path": "/api/v1/subscriptions/{subscription_id}/pause", "methods": ["POST"], "description": "Pause subscription"},
    {"path": "/api/v1/subscriptions/{subscription_id}/unpause", "methods": ["POST"], "description": "Unpause subscription"},
    {"path": "/api/v1/subscriptions/{subscription_id}/pause-status", "methods": ["GET"], "description": "Pause allowance"},

    # Plan changes
    {"path": "/api/v1/subscriptions/{subscription_id}/plan-change", "methods": ["GET", "POST", "DELETE"], "description": "Plan change"},
    {"path": "/api/v1/subscriptions/{subscription_id}/plan-change/preview", "methods": ["POST"], "description": "Preview proration"},

    # Dunning
    {"path": "/api/v1/subscriptions/{subscription_id}/dunning-status", "methods": ["GET"], "description": "Dunning status"},
    {"path": "/api/v1/dunning/payment-failed", "methods": ["POST"], "description": "Record payment failure"},
    {"path": "/api/v1/dunning/payment-recovered", "methods": ["POST"], "description": "Record payment recovery"},
    {"path": "/api/v1/dunning/invoices/{invoice_id}/retry", "methods": ["POST"], "description": "Retry invoice payment"},
    {"path": "/api/v1/dunning/run", "methods": ["POST"], "description": "Run billing sweeps"},
]


__all__ = ["SERVICE_METADATA", "ROUTES"]
