import re
import unicodedata

from sqlalchemy.orm import Session

from homeservice.errors import NotFound
from homeservice.models.category import KIND_DOMESTIC, KIND_REPAIR, ServiceCategory

DEFAULT_CATEGORIES = [
    {"name": "Encanamento", "icon": "droplet", "kind": KIND_REPAIR, "base_price": 15000,
     "description": "Vazamentos, entupimentos, instalações hidráulicas"},
    {"name": "Elétrica", "icon": "zap", "kind": KIND_REPAIR, "base_price": 12000,
     "description": "Instalações elétricas, curtos-circuitos, tomadas"},
    {"name": "Pintura", "icon": "paintbrush", "kind": KIND_REPAIR, "base_price": 20000,
     "description": "Pintura interna e externa, texturas"},
    {"name": "Marcenaria", "icon": "hammer", "kind": KIND_REPAIR, "base_price": 18000,
     "description": "Móveis, portas, janelas, reparos em madeira"},
    {"name": "Ar Condicionado", "icon": "wind", "kind": KIND_REPAIR, "base_price": 25000,
     "description": "Instalação, manutenção e limpeza de AC"},
    {"name": "Limpeza", "icon": "sparkles", "kind": KIND_DOMESTIC, "base_price": 10000,
     "description": "Limpeza residencial e comercial"},
    {"name": "Passadoria", "icon": "shirt", "kind": KIND_DOMESTIC, "base_price": 8000,
     "description": "Passar e organizar roupas"},
]


def _fold(text: str) -> str:
    text = unicodedata.normalize("NFKD", (text or "").lower())
    return "".join(c for c in text if not unicodedata.combining(c)).strip()


def resolve_category(db: Session, category_id: int) -> ServiceCategory:
    category = db.get(ServiceCategory, category_id)
    if not category:
        raise NotFound(f"category {category_id} not found")
    return category


def list_categories(db: Session) -> list[ServiceCategory]:
    return db.query(ServiceCategory).order_by(ServiceCategory.name).all()


def matches_specialty(specialties: str | None, category_name: str) -> bool:
    """
    True when one of the provider's comma/semicolon separated specialties
    names the category (accents and case ignored).
    """
    wanted = _fold(category_name)
    if not wanted:
        return False
    for entry in re.split(r"[,;\n]", specialties or ""):
        entry = _fold(entry)
        if entry and wanted in entry:
            return True
    return False


def seed_categories(db: Session) -> int:
    """Insert the default catalog when the table is empty. Returns rows added."""
    if db.query(ServiceCategory).count():
        return 0
    for data in DEFAULT_CATEGORIES:
        db.add(ServiceCategory(**data))
    db.commit()
    return len(DEFAULT_CATEGORIES)
