# rendering_pipeline.py
"""
validate -> load source -> compose identity text -> watermark -> bytes.

This is the only code path that reads an eBook's source file. Nothing about
the buyer is copied onto the grant; name, contact and order number are looked
up at render time so the watermark never shows stale data.
"""

from __future__ import annotations

import datetime as dt
import logging
from typing import Callable

from access_errors import SourceFileMissing, WatermarkFailure
from access_grants import AccessGrant, utcnow
from access_validator import AccessValidator
from commerce import CommerceGateway, Product
from file_store import FileStore
from watermark_compositor import WatermarkCompositor, compose_watermark_text

logger = logging.getLogger(__name__)


class RenderingPipeline:
    def __init__(self, validator: AccessValidator, compositor: WatermarkCompositor,
                 files: FileStore, commerce: CommerceGateway, *,
                 footer: bool = False,
                 clock: Callable[[], dt.datetime] = utcnow):
        self.validator = validator
        self.compositor = compositor
        self.files = files
        self.commerce = commerce
        self.footer = footer
        self.clock = clock

    def render(self, access_token: str, observed_origin: str, observed_device: str) -> bytes:
        grant = self.validator.require(access_token, observed_origin, observed_device)
        product = self._product_for(grant.product_id, grant=grant)
        text = self.watermark_text_for(grant)
        pdf = self._watermark(product, text, grant=grant)
        logger.info({
            "event": "ebook_rendered",
            "grant_id": grant.id,
            "user_id": grant.user_id,
            "product_id": grant.product_id,
            "size": len(pdf),
        })
        return pdf

    def render_preview(self, product_id: int, admin_user_id: int) -> bytes:
        """Operator preview without a purchase. Watermarked with the operator's identity."""
        product = self._product_for(product_id)
        profile = self.commerce.find_profile(admin_user_id)
        text = compose_watermark_text(
            profile.name if profile else None,
            profile.contact if profile else None,
            "PREVIEW",
            self.clock().date(),
        )
        pdf = self._watermark(product, text)
        logger.warning({
            "event": "ebook_admin_preview",
            "admin_user_id": int(admin_user_id),
            "product_id": product.id,
            "size": len(pdf),
        })
        return pdf

    def watermark_text_for(self, grant: AccessGrant) -> str:
        profile = self.commerce.find_profile(grant.user_id)
        order = self.commerce.find_order(grant.order_id)
        return compose_watermark_text(
            profile.name if profile else None,
            profile.contact if profile else None,
            order.order_number if order else str(grant.order_id),
            self.clock().date(),
        )

    def _product_for(self, product_id: int, grant: AccessGrant | None = None) -> Product:
        product = self.commerce.find_product(product_id)
        if product is None or not product.digital_file:
            logger.error({
                "event": "ebook_source_unresolvable",
                "grant_id": grant.id if grant else None,
                "product_id": int(product_id),
            })
            raise SourceFileMissing(f"product {product_id} has no digital file")
        return product

    def _watermark(self, product: Product, text: str, grant: AccessGrant | None = None) -> bytes:
        try:
            source = self.files.fetch(product.digital_file)
        except SourceFileMissing as e:
            logger.error({
                "event": "ebook_source_missing",
                "grant_id": grant.id if grant else None,
                "product_id": product.id,
                "reference": product.digital_file,
                "error": e.detail,
            })
            raise

        try:
            pdf = self.compositor.compose(source, text)
            if self.footer:
                pdf = self.compositor.stamp_margins(pdf, footer=text)
        except WatermarkFailure as e:
            logger.error({
                "event": "ebook_watermark_failed",
                "grant_id": grant.id if grant else None,
                "product_id": product.id,
                "reference": product.digital_file,
                "error": e.detail,
            })
            raise
        return pdf
