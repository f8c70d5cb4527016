"""
Outbound calls: the Groq chat completion API and the Cloudinary upload API.
"""

import logging
from typing import Any, Dict, List, Optional

import cloudinary
import cloudinary.exceptions
import cloudinary.uploader
import httpx
from fastapi import HTTPException
from fastapi.concurrency import run_in_threadpool

import config

logger = logging.getLogger(__name__)

SYSTEM_PROMPT = """You are a helpful assistant for the "Try Karo" website, a product testing and review platform. Your primary purpose is to answer questions related to our website, its features, products, services, and how to use them.

ABOUT TRY KARO:
Try Karo is a platform that connects brands with users who want to test and review their products. Users can browse available products, request to try them, and then write reviews after testing. Brands can list their products for testing, track reviews, and gain valuable feedback.

WEBSITE FEATURES:
- Product browsing by category and status, and product search
- User accounts: register, login and manage a profile
- Cart: add products to a cart for testing
- Reviews: write and read reviews for products
- Brand dashboard: brands manage their products and view reviews and insights

USER ROLES:
- Testers: browse products, request to test them, and write reviews
- Brands: add products for testing and view feedback
- Admins: manage the entire platform

IMPORTANT INSTRUCTIONS:
1. ONLY answer questions related to Try Karo, its content, features, navigation, products, or services.
2. If a question is not related to the website, politely explain that you can only help with website-related queries and suggest browsing the website.
3. Do not engage in political discussions, provide medical advice, or assist with illegal activities.
4. Always give short and concise answers."""

PLACEHOLDER_KEYS = {"", "your_groq_api_key_here"}

OFFLINE_REPLY = (
    "This is a test response. I can only answer questions related to this website. "
    "Please set GROQ_API_KEY to enable real AI responses."
)


def build_chat_messages(message: Optional[str], history: List[Dict[str, str]]) -> List[Dict[str, str]]:
    msgs = [{"role": "system", "content": SYSTEM_PROMPT}]
    for m in history:
        msgs.append({"role": "user" if m.get("sender") == "user" else "assistant", "content": m.get("text", "")})
    if message:
        msgs.append({"role": "user", "content": message})
    return msgs


async def chat_completion(messages: List[Dict[str, str]]) -> str:
    """Send ``messages`` to Groq, or return the offline reply when no key is configured."""
    if config.GROQ_API_KEY in PLACEHOLDER_KEYS:
        logger.info("GROQ_API_KEY not set, returning offline reply")
        return OFFLINE_REPLY
    payload = {"model": config.GROQ_MODEL, "messages": messages, "temperature": 0.7, "max_tokens": 1024}
    headers = {"Authorization": f"Bearer {config.GROQ_API_KEY}"}
    async with httpx.AsyncClient(timeout=60.0) as client:
        try:
            resp = await client.post(config.GROQ_URL, json=payload, headers=headers)
            resp.raise_for_status()
            return resp.json()["choices"][0]["message"]["content"]
        except (httpx.HTTPError, KeyError, IndexError, ValueError) as e:
            logger.error("Chat API error: %s", e)
            raise HTTPException(status_code=500, detail="Failed to get response from AI")


def _upload(image: str, folder: str) -> Dict[str, Any]:
    cloudinary.config(
        cloud_name=config.CLOUDINARY_CLOUD_NAME,
        api_key=config.CLOUDINARY_API_KEY,
        api_secret=config.CLOUDINARY_API_SECRET,
        secure=True,
    )
    return cloudinary.uploader.upload(image, folder=folder, use_filename=True, unique_filename=True)


async def upload_image(image: str, folder: str = config.UPLOAD_FOLDER) -> Dict[str, str]:
    """Upload a data URI or remote URL to Cloudinary and return its public id and https URL."""
    if not (config.CLOUDINARY_CLOUD_NAME and config.CLOUDINARY_API_KEY and config.CLOUDINARY_API_SECRET):
        raise HTTPException(status_code=500, detail="Image upload is not configured")
    try:
        result = await run_in_threadpool(_upload, image, folder)
        return {"public_id": result["public_id"], "url": result["secure_url"]}
    except (cloudinary.exceptions.Error, KeyError) as e:
        logger.error("Cloudinary upload failed: %s", e)
        raise HTTPException(status_code=502, detail="Image upload failed")
