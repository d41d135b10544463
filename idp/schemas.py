"""
Request parameters of the web endpoints.

Every endpoint has its own parameter class with a parse() classmethod
taking the query or form multi-dict. Problems are collected per field
and raised together as one ValidationError.
"""

from dataclasses import dataclass
from typing import Dict, Mapping, Optional

from .errors import ValidationError
from .scopes import parse_scope


def _get(data: Mapping, field: str) -> Optional[str]:
    value = data.get(field)
    if value is None:
        return None
    return str(value)


def _required(data: Mapping, field: str, errors: Dict[str, str]) -> str:
    value = _get(data, field)
    if value is None or not value.strip():
        errors[field] = f"Field '{field}' is required"
        return ""
    return value


def _scope(data: Mapping) -> frozenset:
    if hasattr(data, "getlist"):
        return parse_scope(data.getlist("scope"))
    return parse_scope(data.get("scope"))


@dataclass
class AuthorizeParams:
    response_type: str
    client_id: str
    redirect_uri: str
    state: str
    scope: frozenset

    @classmethod
    def parse(cls, data: Mapping) -> "AuthorizeParams":
        errors = {}
        params = cls(
            response_type=_required(data, "response_type", errors),
            client_id=_required(data, "client_id", errors),
            redirect_uri=_required(data, "redirect_uri", errors),
            state=_required(data, "state", errors),
            scope=_scope(data),
        )
        if not params.scope:
            errors["scope"] = "Field 'scope' is required"
        if errors:
            raise ValidationError(errors)
        return params


@dataclass
class RequestIdParams:
    request_id: str

    @classmethod
    def parse(cls, data: Mapping) -> "RequestIdParams":
        errors = {}
        params = cls(request_id=_required(data, "request_id", errors))
        if errors:
            raise ValidationError(errors, "Query parameter 'request_id' was missing")
        return params


@dataclass
class LoginParams:
    request_id: str
    login: str
    password: str

    @classmethod
    def parse(cls, data: Mapping) -> "LoginParams":
        errors = {}
        params = cls(
            request_id=_required(data, "request_id", errors),
            login=_required(data, "login", errors),
            password=_required(data, "password", errors),
        )
        if errors:
            raise ValidationError(errors)
        return params


@dataclass
class ApproveParams:
    request_id: str
    scope: frozenset
    deny: bool = False

    @classmethod
    def parse(cls, data: Mapping) -> "ApproveParams":
        errors = {}
        params = cls(
            request_id=_required(data, "request_id", errors),
            scope=_scope(data),
            deny=_get(data, "deny") is not None,
        )
        if not params.deny and not params.scope:
            errors["scope"] = "At least one scope must be approved"
        if errors:
            raise ValidationError(errors)
        return params


@dataclass
class TokenParams:
    grant_type: str
    code: Optional[str] = None
    redirect_uri: Optional[str] = None
    refresh_token: Optional[str] = None
    client_id: Optional[str] = None
    client_secret: Optional[str] = None

    @classmethod
    def parse(cls, data: Mapping) -> "TokenParams":
        errors = {}
        params = cls(
            grant_type=_required(data, "grant_type", errors),
            client_id=_get(data, "client_id"),
            client_secret=_get(data, "client_secret"),
        )
        if params.grant_type == "authorization_code":
            params.code = _required(data, "code", errors)
            params.redirect_uri = _required(data, "redirect_uri", errors)
        elif params.grant_type == "refresh_token":
            params.refresh_token = _required(data, "refresh_token", errors)
        elif params.grant_type:
            errors["grant_type"] = "Unsupported grant type"
        if errors:
            raise ValidationError(errors)
        return params


@dataclass
class RevokeParams:
    token: str
    client_id: Optional[str] = None
    client_secret: Optional[str] = None

    @classmethod
    def parse(cls, data: Mapping) -> "RevokeParams":
        errors = {}
        params = cls(
            token=_required(data, "token", errors),
            client_id=_get(data, "client_id"),
            client_secret=_get(data, "client_secret"),
        )
        if errors:
            raise ValidationError(errors)
        return params
