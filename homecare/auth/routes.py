from flask import Blueprint
from flask_login import login_user, logout_user, current_user, login_required
from flask_wtf import FlaskForm
from flask_wtf.csrf import generate_csrf
from wtforms import StringField, PasswordField, SelectField
from wtforms.validators import DataRequired, Email, Length, Optional
from wtforms.fields import EmailField

from ..api import form_from_json, ok
from ..errors import Conflict, Forbidden
from ..extensions import db
from ..models.user import ROLE_NURSE, ROLE_PATIENT, User

auth_bp = Blueprint("auth", __name__)


class RegisterForm(FlaskForm):
    name = StringField("Name", validators=[DataRequired(), Length(min=2, max=120)])
    email = EmailField("Email", validators=[DataRequired(), Email()])
    phone = StringField("Phone", validators=[Optional(), Length(max=32)])
    password = PasswordField("Password", validators=[DataRequired(), Length(min=8)])
    # admins are created from the CLI only
    role = SelectField(
        "Role", choices=[(ROLE_PATIENT, "Patient"), (ROLE_NURSE, "Nurse")], default=ROLE_PATIENT
    )


class LoginForm(FlaskForm):
    email = EmailField("Email", validators=[DataRequired(), Email()])
    password = PasswordField("Password", validators=[DataRequired()])


@auth_bp.get("/csrf-token")
def csrf_token():
    return ok({"csrfToken": generate_csrf()})


@auth_bp.post("/register")
def register():
    form = form_from_json(RegisterForm)
    email = form.email.data.lower()
    if User.query.filter_by(email=email).first():
        raise Conflict("Email is already registered.")

    user = User(
        email=email,
        name=form.name.data.strip(),
        phone=form.phone.data or None,
        role=form.role.data,
        is_approved=form.role.data != ROLE_NURSE,
    )
    user.set_password(form.password.data)
    db.session.add(user)
    db.session.commit()

    login_user(user)
    return ok(user.to_dict(), 201)


@auth_bp.post("/login")
def login():
    form = form_from_json(LoginForm)
    user = User.query.filter_by(email=form.email.data.lower()).first()
    if not user or not user.check_password(form.password.data):
        raise Forbidden("Invalid credentials.")
    login_user(user)
    return ok(user.to_dict())


@auth_bp.post("/logout")
def logout():
    if current_user.is_authenticated:
        logout_user()
    return ok(message="Signed out.")


@auth_bp.get("/me")
@login_required
def me():
    return ok(current_user.to_dict())
