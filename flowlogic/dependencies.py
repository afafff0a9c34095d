import ipaddress

from fastapi import Request

from flowlogic.config import Settings
from flowlogic.services.alert_rules import AlertRuleConfig


def get_settings(request: Request) -> Settings:
    return request.app.state.settings


def get_rule_config(request: Request) -> AlertRuleConfig:
    return AlertRuleConfig.from_settings(request.app.state.settings)


def _valid_ip(value: str | None) -> str | None:
    if not value:
        return None
    try:
        return str(ipaddress.ip_address(value.strip()))
    except ValueError:
        return None


def get_client_ip(request: Request) -> str | None:
    """First X-Forwarded-For hop when it parses as an address, else the socket peer."""
    forwarded_for = request.headers.get('x-forwarded-for')
    if forwarded_for:
        forwarded = _valid_ip(forwarded_for.split(',')[0])
        if forwarded is not None:
            return forwarded
    if request.client:
        return _valid_ip(request.client.host)
    return None
