"""Helpers shared by the JSON blueprints."""
from flask import jsonify, request
from flask_login import current_user
from werkzeug.datastructures import ImmutableMultiDict

from .errors import ValidationFailed


def actor():
    return current_user._get_current_object()


def json_body() -> dict:
    body = request.get_json(silent=True)
    return body if isinstance(body, dict) else {}


def validated(form):
    if not form.validate_on_submit():
        raise ValidationFailed(fields=form.errors)
    return form


def form_from_json(form_cls, **aliases):
    """Bind a FlaskForm to the JSON body, renaming camelCase keys via ``aliases``."""
    body = dict(json_body())
    for camel, snake in aliases.items():
        if camel in body and snake not in body:
            body[snake] = body.pop(camel)
    # values go in as text, like real form posts, so IntegerField rejects 15000.9
    # instead of truncating it
    formdata = ImmutableMultiDict(
        {k: str(v) for k, v in body.items() if v is not None and not isinstance(v, (dict, list))}
    )
    # CSRFProtect already checks the X-CSRFToken header on every unsafe request
    return validated(form_cls(formdata=formdata, meta={"csrf": False}))


def page_args(default_limit: int = 10) -> tuple[int, int]:
    return (
        request.args.get("page", 1, type=int),
        request.args.get("limit", default_limit, type=int),
    )


def ok(data=None, status: int = 200, **extra):
    body = {"success": True}
    if data is not None:
        body["data"] = data
    body.update(extra)
    return jsonify(body), status
