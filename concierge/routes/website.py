from __future__ import annotations
"""
Concierge — Website Scraping Routes
"""
import logging
from urllib.parse import urlparse

from fastapi import APIRouter, Header, HTTPException, Request

import concierge.database as database
from concierge.errors import AIServiceError
from concierge.models import WebsiteScrapingRequest
from concierge.routes.auth import require_user
from concierge.routes.chat import get_onboarding_engine
from concierge.scraping import ScrapingError, fetch_website_text, normalize_url

logger = logging.getLogger(__name__)

router = APIRouter()

# Accepted website facts needed before onboarding counts as "enhanced"
ENOUGH_FACTS = 3


@router.post("/api/website-scraping")
async def website_scraping(
    req: WebsiteScrapingRequest,
    request: Request,
    authorization: str | None = Header(default=None),
):
    """Fetch the business website, extract facts and store them as answers."""
    user = await require_user(authorization)
    organization = await database.ensure_user_has_organization(user)
    org_id = organization["id"]

    url = normalize_url(req.url)
    parsed = urlparse(url)
    if not parsed.netloc or "." not in parsed.netloc:
        raise HTTPException(status_code=400, detail="Invalid URL format")

    engine = get_onboarding_engine(request)
    try:
        content = await fetch_website_text(url)
        info = await engine.generator.summarize_website(org_id, url, content)
        accepted = await engine.apply_website_facts(org_id, info)
    except ScrapingError as e:
        logger.warning(f"[website] Scrape failed for {url}: {e}")
        await database.set_website_scraping_state(org_id, "completed")
        raise HTTPException(status_code=504 if e.timed_out else 502, detail=str(e))
    except AIServiceError as e:
        logger.warning(f"[website] Summary failed for {url}: {e}")
        await database.set_website_scraping_state(org_id, "completed")
        raise HTTPException(status_code=502, detail=e.user_message)

    # Always completed, success or not, so onboarding never stalls on it
    await database.set_website_scraping_state(org_id, "completed")

    has_enough = len(accepted) >= ENOUGH_FACTS
    logger.info(f"[website] {url}: {len(accepted)} fact(s) stored for {org_id}")
    return {
        "success": True,
        "hasEnoughInfo": has_enough,
        "businessInfo": {f["field_name"]: f["value"] for f in accepted},
        "message": (
            "Business information extracted successfully! I've filled in what I found "
            "on your website, so I'll only ask about what's missing."
            if has_enough
            else "I couldn't find enough business information on your website, "
            "so let's continue with our standard setup questions."
        ),
    }


@router.post("/api/website-scraping/skip")
async def website_scraping_skip(authorization: str | None = Header(default=None)):
    """Record that the user declined the website analysis."""
    user = await require_user(authorization)
    organization = await database.ensure_user_has_organization(user)
    await database.set_website_scraping_state(organization["id"], "skipped")
    return {"success": True}
