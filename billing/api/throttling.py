"""
Request throttling for the customer portal.
Share links work without a login, so they are rate limited per client address.
"""
from rest_framework.throttling import AnonRateThrottle


class PortalThrottle(AnonRateThrottle):
    """Allow max 60 portal requests per hour."""
    scope = 'portal'
    THROTTLE_RATES = {
        'portal': '60/hour',
    }


class PortalPaymentThrottle(AnonRateThrottle):
    """Allow max 5 portal payment attempts per hour."""
    scope = 'portal_payment'
    THROTTLE_RATES = {
        'portal_payment': '5/hour',
    }
