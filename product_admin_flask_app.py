# Storefront Admin - Create Product
# =================================
# A single-file Flask app serving the admin "Crear Nuevo Producto" page of the pet storefront.
# The page collects name, description, price, weight, category/subcategory and an image,
# validates them locally and hands the product to the remote products API.
#
# Notes
# - The products API is an external collaborator (PRODUCTS_API_URL); nothing is stored here.
# - Subcategory always follows the selected category (reset to the first option on change).
# - Oversized/unknown images are rejected before any network call.
#
# Quick start
#   python -m venv .venv
#   source .venv/bin/activate
#   pip install -e .[test]
#   export MODE=server
#   export PRODUCTS_API_URL=http://localhost:4000/api
#   python product_admin_flask_app.py
#
from __future__ import annotations

import logging
import math
import os
import re
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Mapping, Optional, Union

import requests
from flask import (
    Flask,
    abort,
    current_app,
    flash,
    jsonify,
    redirect,
    render_template,
    request,
    url_for,
)
from jinja2 import ChoiceLoader, DictLoader
from werkzeug.datastructures import FileStorage
from werkzeug.exceptions import RequestEntityTooLarge
from werkzeug.utils import secure_filename

logger = logging.getLogger(__name__)

# ----------------------------
# Catalog & messages
# ----------------------------
CATEGORY_OPTIONS = ("Perros", "Gatos")
SUBCATEGORIES = {
    "Perros": ("Alimento", "Juguetes", "Accesorios", "Higiene"),
    "Gatos": ("Alimento", "Rascadores", "Arena", "Accesorios"),
}
DEFAULT_CATEGORY = CATEGORY_OPTIONS[0]

MAX_IMAGE_BYTES = 10 * 1024 * 1024  # 10 MB, inclusive
ALLOWED_IMAGE_EXT = {"jpg", "jpeg", "png", "svg", "webp"}

DUPLICATE_NAME_CODE = "nombre_duplicado"
PRODUCT_LIST_PATH = "/admin/productos"

MSG_REQUIRED = "Por favor, completa todos los campos obligatorios."
MSG_CREATED = "Producto creado exitosamente"
MSG_DUPLICATE = "Ya existe un producto con ese nombre."
MSG_FAILED = "Error al crear el producto. Revisa los registros del servidor."
MSG_IMAGE_INVALID = "Formato o tamaño de imagen no válido. Usa JPG, PNG, SVG o WebP (máx. 10 MB)."

IMAGE_MISSING = "missing"
IMAGE_INVALID = "invalid"

# ----------------------------
# Config helpers
# ----------------------------

def _env_float(name: str, default: float) -> float:
    raw = os.environ.get(name)
    if not raw:
        return default
    try:
        return float(raw)
    except ValueError:
        logger.warning("Ignoring non-numeric %s=%r, using %s", name, raw, default)
        return default


PRODUCTS_API_URL = os.environ.get("PRODUCTS_API_URL", "http://localhost:4000/api")
PRODUCTS_API_TIMEOUT = _env_float("PRODUCTS_API_TIMEOUT", 30.0)

# Above the image cap so an oversized image still reaches validation
MAX_CONTENT_LENGTH = 16 * 1024 * 1024

app = Flask(__name__)
app.config.update(
    SECRET_KEY=os.environ.get("SECRET_KEY", "dev-secret"),
    PRODUCTS_API_URL=PRODUCTS_API_URL,
    PRODUCTS_API_TIMEOUT=PRODUCTS_API_TIMEOUT,
    MAX_CONTENT_LENGTH=MAX_CONTENT_LENGTH,
)


# ----------------------------
# Form state
# ----------------------------
@dataclass
class ImageFile:
    """An uploaded image as the form sees it: name, size and an opaque stream."""

    filename: str
    size: int
    stream: Any = None
    mimetype: Optional[str] = None

    @property
    def extension(self) -> str:
        # Text after the last dot; a name without dots yields the whole name
        return self.filename.rsplit(".", 1)[-1].lower()

    @classmethod
    def from_storage(cls, storage: Optional[FileStorage]) -> Optional["ImageFile"]:
        if not storage or not storage.filename:
            return None
        stream = storage.stream
        stream.seek(0, os.SEEK_END)
        size = stream.tell()
        stream.seek(0)
        return cls(filename=storage.filename, size=size, stream=stream, mimetype=storage.mimetype)


def subcategories_for(categoria: str) -> tuple:
    return SUBCATEGORIES.get(categoria, ())


@dataclass
class FormState:
    nombre: str = ""
    descripcion: str = ""
    precio: str = ""
    peso: str = ""
    categoria: str = DEFAULT_CATEGORY
    subcategoria: str = ""
    imagen: Optional[ImageFile] = None


FORM_FIELDS = ("nombre", "descripcion", "precio", "peso", "categoria", "subcategoria", "imagen")


@dataclass(frozen=True)
class ProductPayload:
    nombre: str
    descripcion: str
    precio: float
    peso: int
    categoria: str
    subcategoria: str
    imagen: Optional[ImageFile] = None

    def form_fields(self) -> dict:
        """Text parts of the multipart body; the image travels separately."""
        return {
            "nombre": self.nombre,
            "descripcion": self.descripcion,
            "precio": str(self.precio),
            "peso": str(self.peso),
            "categoria": self.categoria,
            "subcategoria": self.subcategoria,
        }


# ----------------------------
# Validation
# ----------------------------

# Leading numeric prefix only: "500.5" weighs 500, "12abc" costs 12, "1_000" costs 1
_PRICE_PREFIX = re.compile(r"\s*([+-]?(?:[0-9]+\.?[0-9]*|\.[0-9]+)(?:[eE][+-]?[0-9]+)?)")
_WEIGHT_PREFIX = re.compile(r"\s*([+-]?[0-9]+)")


def parse_price(raw: Optional[str]) -> Optional[float]:
    m = _PRICE_PREFIX.match(raw or "")
    if not m:
        return None
    value = float(m.group(1))
    if not math.isfinite(value):
        return None
    return value


def parse_weight(raw: Optional[str]) -> Optional[int]:
    m = _WEIGHT_PREFIX.match(raw or "")
    return int(m.group(1)) if m else None


def image_error(image: Optional[ImageFile]) -> Optional[str]:
    if image is None:
        return IMAGE_MISSING
    if image.extension not in ALLOWED_IMAGE_EXT or image.size > MAX_IMAGE_BYTES:
        return IMAGE_INVALID
    return None


def validate_form(state: FormState) -> dict[str, Union[bool, str]]:
    """Return ``{field: flag}`` for every invalid field; empty means the form is valid.

    Flags are ``True`` except for ``imagen``, which carries ``"missing"`` or
    ``"invalid"`` (bad extension or larger than :data:`MAX_IMAGE_BYTES`).
    """
    errors: dict[str, Union[bool, str]] = {}
    if len((state.nombre or "").strip()) < 2:
        errors["nombre"] = True
    if len((state.descripcion or "").strip()) < 10:
        errors["descripcion"] = True
    precio = parse_price(state.precio)
    if precio is None or precio <= 0:
        errors["precio"] = True
    peso = parse_weight(state.peso)
    if peso is None or peso < 1:
        errors["peso"] = True
    if state.categoria not in CATEGORY_OPTIONS:
        errors["categoria"] = True
    if state.subcategoria not in subcategories_for(state.categoria):
        errors["subcategoria"] = True
    img = image_error(state.imagen)
    if img:
        errors["imagen"] = img
    return errors


# ----------------------------
# Product service & error classification
# ----------------------------
class ProductServiceError(Exception):
    """Failure reported by the products API (or by the transport reaching it)."""

    def __init__(
        self,
        message: Optional[str] = None,
        *,
        code: Optional[str] = None,
        status: Optional[int] = None,
        detail: Any = None,
    ):
        super().__init__(message or code or (f"HTTP {status}" if status else "product service error"))
        self.message = message
        self.code = code
        self.status = status
        self.detail = detail


@dataclass(frozen=True)
class DuplicateName:
    pass


@dataclass(frozen=True)
class MessageProvided:
    text: str


@dataclass(frozen=True)
class Unclassified:
    detail: Any = None


CreateFailure = Union[DuplicateName, MessageProvided, Unclassified]


def classify_create_error(err: ProductServiceError) -> CreateFailure:
    if err.code == DUPLICATE_NAME_CODE or err.status == 409:
        return DuplicateName()
    if err.message:
        return MessageProvided(err.message)
    return Unclassified(err.detail if err.detail is not None else err)


class ProductService(ABC):
    @abstractmethod
    def create_product(self, payload: ProductPayload) -> dict: ...


def _json_or_empty(resp: requests.Response) -> dict:
    try:
        body = resp.json()
    except ValueError:
        return {}
    return body if isinstance(body, dict) else {}


def _text_or_none(value: Any) -> Optional[str]:
    # Only non-empty strings are shown to the user; anything else stays in ``detail``
    return value if isinstance(value, str) and value.strip() else None


class HttpProductService(ProductService):
    """Products API client: one multipart POST per created product."""

    def __init__(self, base_url: str, timeout: float = 30.0, session: Optional[requests.Session] = None):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.session = session or requests.Session()

    def create_product(self, payload: ProductPayload) -> dict:
        url = f"{self.base_url}/productos"
        files = None
        if payload.imagen is not None:
            img = payload.imagen
            files = {"imagen": (secure_filename(img.filename) or "imagen", img.stream, img.mimetype)}
        try:
            r = self.session.post(url, data=payload.form_fields(), files=files, timeout=self.timeout)
        except requests.RequestException as e:
            raise ProductServiceError(detail=e) from e
        if not r.ok:
            body = _json_or_empty(r)
            raise ProductServiceError(
                _text_or_none(body.get("message")),
                code=_text_or_none(body.get("error")),
                status=r.status_code,
                detail=body or r.text,
            )
        return _json_or_empty(r)


# ----------------------------
# Notifier & router
# ----------------------------
class FlashNotifier:
    def success(self, text: str) -> None:
        flash(text, "success")

    def error(self, text: str) -> None:
        flash(text, "error")


class FlaskRouter:
    """Records where to go; the view returns :attr:`response` when set."""

    def __init__(self):
        self.response = None

    def navigate(self, path: str) -> None:
        self.response = redirect(path)


# ----------------------------
# Form controller
# ----------------------------
@dataclass
class SubmitOutcome:
    status: str  # invalid | created | failed | ignored
    errors: dict = field(default_factory=dict)
    failure: Optional[CreateFailure] = None
    result: Optional[dict] = None


class ProductFormController:
    """Owns the create-product form: field edits, validation and the single create call."""

    def __init__(self, service: ProductService, notifier, router, state: Optional[FormState] = None):
        self.service = service
        self.notifier = notifier
        self.router = router
        self.state = state or FormState()
        self.errors: dict[str, Union[bool, str]] = {}
        self.submitting = False
        self.set_category(self.state.categoria)

    def set_category(self, value: str) -> None:
        self.state.categoria = value
        domain = subcategories_for(value)
        self.state.subcategoria = domain[0] if domain else ""

    def set_field(self, key: str, value: Any) -> None:
        if key not in FORM_FIELDS:
            raise KeyError(key)
        if key == "categoria":
            self.set_category(value)
        else:
            setattr(self.state, key, value)

    def load(self, form: Mapping[str, str], files: Optional[Mapping[str, FileStorage]] = None) -> None:
        # Category goes first so a posted subcategory is applied after the reset
        for key in FORM_FIELDS:
            if key == "imagen":
                if files is not None:
                    self.set_field(key, ImageFile.from_storage(files.get(key)))
            elif key in form:
                self.set_field(key, form[key])

    def validate(self) -> bool:
        self.errors = validate_form(self.state)
        return not self.errors

    def build_payload(self) -> ProductPayload:
        s = self.state
        return ProductPayload(
            nombre=s.nombre.strip(),
            descripcion=s.descripcion.strip(),
            precio=parse_price(s.precio),
            peso=parse_weight(s.peso),
            categoria=s.categoria,
            subcategoria=s.subcategoria,
            imagen=s.imagen,
        )

    def submit(self) -> SubmitOutcome:
        if self.submitting:
            logger.info("Ignoring submit while a create call is in flight")
            return SubmitOutcome("ignored")
        if not self.validate():
            self.notifier.error(MSG_REQUIRED)
            return SubmitOutcome("invalid", errors=dict(self.errors))

        payload = self.build_payload()
        self.submitting = True
        try:
            logger.info("Creating product %r (%s/%s)", payload.nombre, payload.categoria, payload.subcategoria)
            result = self.service.create_product(payload)
        except ProductServiceError as err:
            failure = classify_create_error(err)
            self._report_failure(failure, err)
            return SubmitOutcome("failed", failure=failure)
        except Exception as err:
            failure = Unclassified(err)
            self._report_failure(failure, err)
            return SubmitOutcome("failed", failure=failure)
        finally:
            self.submitting = False

        self.notifier.success(MSG_CREATED)
        self.router.navigate(PRODUCT_LIST_PATH)
        return SubmitOutcome("created", result=result)

    def _report_failure(self, failure: CreateFailure, err: ProductServiceError) -> None:
        if isinstance(failure, DuplicateName):
            logger.info("Duplicate product name %r", self.state.nombre.strip())
            self.notifier.error(MSG_DUPLICATE)
        elif isinstance(failure, MessageProvided):
            self.notifier.error(failure.text)
        else:
            logger.error("Unclassified product creation failure: %r", failure.detail, exc_info=err)
            self.notifier.error(MSG_FAILED)


# ----------------------------
# Routes - Views
# ----------------------------

def get_product_service() -> ProductService:
    svc = current_app.extensions.get("product_service")
    if svc is None:
        svc = HttpProductService(current_app.config["PRODUCTS_API_URL"], current_app.config["PRODUCTS_API_TIMEOUT"])
        current_app.extensions["product_service"] = svc
    return svc


def _render_form(controller: ProductFormController, status: int = 200):
    return render_template(
        "form.html",
        form=controller.state,
        errors=controller.errors,
        categories=CATEGORY_OPTIONS,
        subcategories=subcategories_for(controller.state.categoria),
        accept=",".join(f".{e}" for e in sorted(ALLOWED_IMAGE_EXT)),
        image_invalid_msg=MSG_IMAGE_INVALID,
    ), status


@app.get(PRODUCT_LIST_PATH)
def product_list():
    return render_template("list.html")


@app.get(f"{PRODUCT_LIST_PATH}/nuevo")
def product_new():
    controller = ProductFormController(get_product_service(), FlashNotifier(), FlaskRouter())
    return _render_form(controller)


@app.post(f"{PRODUCT_LIST_PATH}/nuevo")
def product_create():
    router = FlaskRouter()
    controller = ProductFormController(get_product_service(), FlashNotifier(), router)
    controller.load(request.form, request.files)

    if request.form.get("accion") == "categoria":
        # No-JS path: apply the category transition and show the form again
        controller.set_category(controller.state.categoria)
        return _render_form(controller)

    outcome = controller.submit()
    if router.response is not None:
        app.logger.info("Product %r created", controller.state.nombre.strip())
        return router.response
    app.logger.info("Create product form not accepted: %s %s", outcome.status, sorted(outcome.errors))
    return _render_form(controller, 400 if outcome.status == "invalid" else 200)


@app.get(f"{PRODUCT_LIST_PATH}/subcategorias")
def product_subcategories():
    categoria = (request.args.get("categoria") or "").strip()
    if categoria not in CATEGORY_OPTIONS:
        abort(400, "Unknown category")
    return jsonify(categoria=categoria, subcategorias=list(subcategories_for(categoria)))


@app.errorhandler(RequestEntityTooLarge)
def upload_too_large(e):
    app.logger.warning("Rejected upload over %s bytes", app.config["MAX_CONTENT_LENGTH"])
    flash(MSG_IMAGE_INVALID, "error")
    return redirect(url_for("product_new"))


# ----------------------------
# Templates
# ----------------------------
TPL_BASE = r"""
<!doctype html>
<html lang="es">
<head>
  <meta charset="utf-8">
  <meta name="viewport" content="width=device-width, initial-scale=1">
  <title>Admin - Productos</title>
  <script src="https://cdn.tailwindcss.com"></script>
  <style>
    .error { border-color: #dc2626 !important; background: #fef2f2; }
  </style>
</head>
<body class="bg-gray-50 text-gray-900">
  <div class="max-w-3xl mx-auto p-6">
    <header class="flex items-center justify-between mb-6">
      <h1 class="text-2xl font-semibold">Panel de administración</h1>
      <nav class="flex items-center gap-2">
        <a href="{{ url_for('product_list') }}" class="px-3 py-2 rounded-xl bg-white shadow hover:shadow-md">Productos</a>
        <a href="{{ url_for('product_new') }}" class="px-3 py-2 rounded-xl bg-blue-600 text-white hover:bg-blue-700">Nuevo producto</a>
      </nav>
    </header>

    {% with messages = get_flashed_messages(with_categories=true) %}
      {% if messages %}
        <div class="space-y-2 mb-4">
          {% for category, msg in messages %}
            <div class="px-4 py-3 rounded-xl {% if category == 'error' %}bg-red-100 text-red-700{% elif category == 'success' %}bg-green-100 text-green-700{% else %}bg-gray-100{% endif %}">{{ msg }}</div>
          {% endfor %}
        </div>
      {% endif %}
    {% endwith %}

    {% block content %}{% endblock %}
  </div>
</body>
</html>
"""

TPL_LIST = r"""
{% extends "base.html" %}
{% block content %}
  <div class="bg-white rounded-2xl shadow p-6">
    <h2 class="text-xl font-semibold mb-2">Productos</h2>
    <p class="text-gray-600">El catálogo se administra desde el servicio de productos.</p>
    <a href="{{ url_for('product_new') }}" class="inline-block mt-4 px-4 py-2 rounded-xl bg-blue-600 text-white hover:bg-blue-700">Nuevo producto</a>
  </div>
{% endblock %}
"""

TPL_FORM = r"""
{% extends "base.html" %}
{% block content %}
  {% set field_cls = "px-3 py-2 rounded-xl border w-full" %}
  <div class="admin-nuevo-producto-page bg-white rounded-2xl shadow p-6">
    <h2 class="text-xl font-semibold mb-4">Crear Nuevo Producto</h2>
    <form method="post" enctype="multipart/form-data" action="{{ url_for('product_create') }}" class="form-producto space-y-4" novalidate
          onsubmit="var b = this.querySelector('button[name=guardar]'); if (b) { b.disabled = true; }">
      <label class="block">
        <span class="block text-sm text-gray-600">Nombre</span>
        <input name="nombre" value="{{ form.nombre }}" placeholder="Nombre del producto"
               class="{{ field_cls }} {{ 'error' if errors.nombre else '' }}"/>
      </label>

      <label class="block">
        <span class="block text-sm text-gray-600">Descripción</span>
        <textarea name="descripcion" rows="3" placeholder="Descripción (mínimo 10 caracteres)"
                  class="{{ field_cls }} {{ 'error' if errors.descripcion else '' }}">{{ form.descripcion }}</textarea>
      </label>

      <div class="grid grid-cols-1 md:grid-cols-2 gap-4">
        <label class="block">
          <span class="block text-sm text-gray-600">Precio</span>
          <input type="number" step="0.01" name="precio" value="{{ form.precio }}" placeholder="Precio"
                 class="{{ field_cls }} {{ 'error' if errors.precio else '' }}"/>
        </label>
        <label class="block">
          <span class="block text-sm text-gray-600">Peso (gramos)</span>
          <input type="number" name="peso" value="{{ form.peso }}" placeholder="Ingresa el peso en gramos (ej: 500)"
                 class="{{ field_cls }} {{ 'error' if errors.peso else '' }}"/>
          <small class="text-gray-500">Ingresa el peso en gramos (ej: 500 para 500g)</small>
        </label>
      </div>

      <div class="grid grid-cols-1 md:grid-cols-2 gap-4">
        <label class="block">
          <span class="block text-sm text-gray-600">Categoría</span>
          <select name="categoria" id="categoria" class="{{ field_cls }} {{ 'error' if errors.categoria else '' }}">
            {% for c in categories %}<option value="{{ c }}" {% if c == form.categoria %}selected{% endif %}>{{ c }}</option>{% endfor %}
          </select>
          <noscript><button name="accion" value="categoria" class="mt-2 text-sm text-blue-700">Actualizar subcategorías</button></noscript>
        </label>
        <label class="block">
          <span class="block text-sm text-gray-600">Subcategoría</span>
          <select name="subcategoria" id="subcategoria" class="{{ field_cls }} {{ 'error' if errors.subcategoria else '' }}">
            {% for s in subcategories %}<option value="{{ s }}" {% if s == form.subcategoria %}selected{% endif %}>{{ s }}</option>{% endfor %}
          </select>
        </label>
      </div>

      <label class="block">
        <span class="block text-sm text-gray-600">Imagen</span>
        <input type="file" name="imagen" accept="{{ accept }}"
               class="block w-full text-sm text-gray-600 {{ 'error' if errors.imagen else '' }}"/>
        {% if errors.imagen == 'invalid' %}
          <small class="error-text text-red-700">{{ image_invalid_msg }}</small>
        {% endif %}
      </label>

      <div class="actions flex items-center gap-2">
        <button type="submit" name="guardar" class="px-4 py-2 rounded-xl bg-blue-600 text-white hover:bg-blue-700">Guardar producto</button>
        <a href="{{ url_for('product_list') }}" class="px-4 py-2 rounded-xl bg-white border">Cancelar</a>
      </div>
    </form>
  </div>

  <script>
  document.getElementById('categoria').addEventListener('change', function () {
    var sub = document.getElementById('subcategoria');
    fetch("{{ url_for('product_subcategories') }}?categoria=" + encodeURIComponent(this.value))
      .then(function (r) { return r.json(); })
      .then(function (data) {
        sub.innerHTML = '';
        data.subcategorias.forEach(function (s) { sub.add(new Option(s, s)); });
        sub.selectedIndex = 0;
      });
  });
  </script>
{% endblock %}
"""

# Register in-memory templates for Jinja loader
_existing_loader = app.jinja_loader
_dict_loader = DictLoader({
    "base.html": TPL_BASE,
    "list.html": TPL_LIST,
    "form.html": TPL_FORM,
})
if _existing_loader is None:
    app.jinja_loader = _dict_loader
else:
    app.jinja_loader = ChoiceLoader([_existing_loader, _dict_loader])


if __name__ == "__main__":
    mode = os.environ.get("MODE")  # server|test|snapshot
    logging.basicConfig(level=os.environ.get("LOG_LEVEL", "INFO").upper())

    if mode == "test" or os.environ.get("RUN_TESTS") == "1":
        import unittest

        suite = unittest.defaultTestLoader.loadTestsFromName("test_product_admin_flask_app")
        unittest.TextTestRunner(verbosity=2).run(suite)

    elif mode == "server":
        host = os.getenv("HOST", "0.0.0.0")
        port = int(os.getenv("PORT", "8000"))
        debug = os.getenv("FLASK_DEBUG", "0") == "1"
        logger.info("Starting server on http://%s:%s (products API: %s)", host, port, app.config["PRODUCTS_API_URL"])
        app.run(host=host, port=port, debug=debug)

    else:
        with app.test_request_context(f"{PRODUCT_LIST_PATH}/nuevo"):
            html, _ = product_new()
        snap_path = Path.cwd() / "nuevo_producto_snapshot.html"
        snap_path.write_text(html, encoding="utf-8")
        print("Snapshot written:", snap_path.resolve())
        print("To run the web server locally: set MODE=server and execute this file.")
