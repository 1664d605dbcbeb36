from flask import Blueprint, request
from flask_login import login_required
from flask_wtf import FlaskForm
from wtforms import FloatField, IntegerField, StringField, TextAreaField
from wtforms.fields import DateTimeField
from wtforms.validators import DataRequired, InputRequired, Length, NumberRange, Optional

from ..api import actor, form_from_json, json_body, ok
from .engine import get_engine

requests_bp = Blueprint("requests", __name__)

DATE_FORMATS = ["%Y-%m-%dT%H:%M:%S", "%Y-%m-%dT%H:%M", "%Y-%m-%d"]


class RequestForm(FlaskForm):
    title = StringField("Title", validators=[DataRequired(), Length(max=200)])
    description = TextAreaField("Description", validators=[Optional(), Length(max=5000)])
    service_type = StringField("Service type", validators=[DataRequired(), Length(max=64)])
    address = StringField("Address", validators=[Optional(), Length(max=255)])
    latitude = FloatField("Latitude", validators=[Optional(), NumberRange(-90, 90)])
    longitude = FloatField("Longitude", validators=[Optional(), NumberRange(-180, 180)])
    scheduled_date = DateTimeField("Scheduled", format=DATE_FORMATS, validators=[Optional()])
    budget = IntegerField("Budget", validators=[Optional(), NumberRange(min=0)])


class RequestUpdateForm(RequestForm):
    title = StringField("Title", validators=[Optional(), Length(max=200)])
    service_type = StringField("Service type", validators=[Optional(), Length(max=64)])


class CancelForm(FlaskForm):
    reason = StringField("Reason", validators=[Optional(), Length(max=500)])


class ApplicationForm(FlaskForm):
    price = IntegerField("Price", validators=[InputRequired(), NumberRange(min=0)])
    estimated_time = IntegerField(
        "Estimated time (hours)", validators=[InputRequired(), NumberRange(min=1)]
    )


REQUEST_ALIASES = {"serviceType": "service_type", "scheduledDate": "scheduled_date"}


def _bid_form() -> ApplicationForm:
    return form_from_json(ApplicationForm, estimatedTime="estimated_time")


def _coordinates(form) -> dict:
    # GeoJSON order: [longitude, latitude]
    coords = json_body().get("coordinates")
    if isinstance(coords, list) and len(coords) == 2:
        return {"longitude": coords[0], "latitude": coords[1]}
    return {"longitude": form.longitude.data, "latitude": form.latitude.data}


def _application_row(a) -> dict:
    row = a.to_dict()
    if a.nurse is not None:
        row["nurse"] = {"id": a.nurse.id, "name": a.nurse.name, "phone": a.nurse.phone}
    return row


@requests_bp.post("/requests")
@login_required
def create_request():
    form = form_from_json(RequestForm, **REQUEST_ALIASES)
    req = get_engine().create_request(
        actor(),
        title=form.title.data.strip(),
        description=(form.description.data or "").strip() or None,
        service_type=form.service_type.data.strip(),
        address=form.address.data or None,
        **_coordinates(form),
        scheduled_date=form.scheduled_date.data,
        budget=form.budget.data,
    )
    return ok(req.to_dict(), 201)


@requests_bp.get("/requests")
@login_required
def list_requests():
    rows = get_engine().list_requests(actor(), status=request.args.get("status"))
    return ok([r.to_dict() for r in rows])


@requests_bp.get("/requests/<int:req_id>")
@login_required
def get_request(req_id):
    return ok(get_engine().get_request(req_id, actor()).to_dict())


@requests_bp.patch("/requests/<int:req_id>")
@login_required
def update_request(req_id):
    form = form_from_json(RequestUpdateForm, **REQUEST_ALIASES)
    fields = {name: f.data for name, f in form._fields.items() if name != "csrf_token"}
    fields.update(_coordinates(form))
    req = get_engine().update_request(req_id, actor(), **fields)
    return ok(req.to_dict())


@requests_bp.post("/requests/<int:req_id>/cancel")
@login_required
def cancel_request(req_id):
    form = form_from_json(CancelForm)
    req = get_engine().cancel_request(req_id, actor(), reason=form.reason.data or None)
    return ok(req.to_dict())


@requests_bp.post("/requests/<int:req_id>/complete")
@login_required
def complete_request(req_id):
    user = actor()
    req = get_engine().mark_completed(req_id, user, user.role)
    return ok(req.to_dict(), message="Request marked as completed by %s" % user.role)


@requests_bp.post("/requests/<int:req_id>/applications")
@login_required
def apply(req_id):
    form = _bid_form()
    application = get_engine().apply(
        req_id, actor(), form.price.data, form.estimated_time.data
    )
    return ok(application.to_dict(), 201)


@requests_bp.get("/requests/<int:req_id>/applications")
@login_required
def request_applications(req_id):
    rows = get_engine().list_applications(req_id, actor())
    return ok([_application_row(a) for a in rows])


@requests_bp.get("/applications/mine")
@login_required
def my_applications():
    rows = get_engine().nurse_applications(actor())
    out = []
    for a in rows:
        row = a.to_dict()
        row["request"] = a.service_request.to_dict() if a.service_request else None
        out.append(row)
    return ok(out)


@requests_bp.post("/applications/<int:application_id>/accept")
@login_required
def accept_application(application_id):
    application = get_engine().accept_application(application_id, actor())
    return ok(application.to_dict())


@requests_bp.post("/applications/<int:application_id>/reject")
@login_required
def reject_application(application_id):
    application = get_engine().reject_application(application_id, actor())
    return ok(application.to_dict())


@requests_bp.patch("/applications/<int:application_id>")
@login_required
def update_application(application_id):
    form = _bid_form()
    application = get_engine().update_application(
        application_id, actor(), form.price.data, form.estimated_time.data
    )
    return ok(application.to_dict(), message="Application updated successfully")


@requests_bp.delete("/applications/<int:application_id>")
@login_required
def cancel_application(application_id):
    get_engine().cancel_application(application_id, actor())
    return ok({"applicationId": application_id}, message="Application cancelled successfully")
