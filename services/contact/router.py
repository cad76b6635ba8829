"""
services/contact/router.py
Public contact-us form. Admins read submissions under /admin/contact-forms.
"""

import logging

from fastapi import APIRouter, Depends, status
from sqlalchemy.ext.asyncio import AsyncSession

from config.database import get_db
from shared.models.models import ContactForm
from shared.schemas.schemas import ContactFormRequest, MessageResponse

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/contact", tags=["Contact"])


@router.post("", response_model=MessageResponse, status_code=status.HTTP_201_CREATED)
async def submit_contact_form(data: ContactFormRequest, db: AsyncSession = Depends(get_db)):
    form = ContactForm(name=data.name.strip(), email=data.email, message=data.message.strip())
    db.add(form)
    await db.commit()
    logger.info(f"Contact form {form.id} received")
    return MessageResponse(message="Thanks for reaching out. We'll get back to you soon.")
