"""Per-model prompt profiles for email classification.

Small local models differ a lot in which instruction format they follow
reliably, so each model family gets its own single and batch prompt plus
recommended throughput settings.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any


@dataclass(frozen=True)
class ModelProfile:
    """Prompts and recommended throughput settings for a model family."""

    single_prompt: str
    batch_prompt: str
    workers: int
    batch_size: int
    concurrency: int
    description: str
    speed: str  # fast, medium, slow

    def to_dict(self) -> dict[str, Any]:
        return {
            "workers": self.workers,
            "batch_size": self.batch_size,
            "concurrency": self.concurrency,
            "description": self.description,
            "speed": self.speed,
            "prompt_preview": self.single_prompt[:100] + "...",
        }


MODEL_PROFILES: dict[str, ModelProfile] = {
    "qwen2.5": ModelProfile(
        single_prompt="""Task: Email Classification
Categories: spam, newsletter, keep

Definitions:
- spam: unwanted ads, scams, phishing, junk
- newsletter: subscriptions, marketing, company updates
- keep: personal messages, work emails, receipts, important notifications

Email:
From: {from_addr}
Subject: {subject}
Content: {body_preview}

Output JSON: {{"classification":"<category>","confidence":<0.0-1.0>,"reasoning":"<short reason>"}}""",
        batch_prompt="""Task: Classify each email as spam, newsletter, or keep.

spam=unwanted/scams/junk | newsletter=subscriptions/marketing | keep=personal/work/important

{emails}

Output a JSON array with one object per email, in order: [{{"classification":"<category>","confidence":<0.0-1.0>}}]""",
        workers=16,
        batch_size=8,
        concurrency=12,
        description="Fastest model, good accuracy. Suited to bulk processing.",
        speed="fast",
    ),
    "llama3.2": ModelProfile(
        single_prompt="""You are an email classifier. Put the email into exactly one category.

CATEGORIES:
spam - junk mail, scams, phishing attempts, unsolicited ads
newsletter - subscription emails, marketing, company newsletters
keep - personal emails, work messages, receipts, important notifications

EMAIL:
From: {from_addr}
Subject: {subject}
Body: {body_preview}

Respond with ONLY this JSON:
{{"classification": "spam" or "newsletter" or "keep", "confidence": 0.0 to 1.0, "reasoning": "short reason"}}""",
        batch_prompt="""Classify each email below as spam, newsletter, or keep.

spam = junk/scams/phishing
newsletter = subscriptions/marketing/updates
keep = personal/work/important

{emails}

Return a JSON array with one classification per email, in order:
[{{"classification": "spam|newsletter|keep", "confidence": 0.0-1.0}}]""",
        workers=8,
        batch_size=6,
        concurrency=8,
        description="Accurate with moderate speed.",
        speed="medium",
    ),
    "phi3": ModelProfile(
        single_prompt="""Email Classification Task

Input Email:
- From: {from_addr}
- Subject: {subject}
- Body: {body_preview}

Classify as one of:
- spam (junk, scam, phishing, unwanted promotion)
- newsletter (subscriptions, marketing, company updates)
- keep (personal, work, receipts, important)

JSON Response: {{"classification":"VALUE","confidence":SCORE,"reasoning":"REASON"}}""",
        batch_prompt="""Classify emails into: spam | newsletter | keep

{emails}

JSON array response: [{{"classification":"VALUE","confidence":SCORE}}]""",
        workers=10,
        batch_size=6,
        concurrency=10,
        description="Fast model with solid reasoning.",
        speed="fast",
    ),
    "gemma": ModelProfile(
        single_prompt="""Classify this email into one category: spam, newsletter, or keep.

- spam: junk mail, scams, phishing, unwanted promotional content
- newsletter: subscription emails, marketing, updates you signed up for
- keep: personal correspondence, work emails, receipts, important notifications

From: {from_addr}
Subject: {subject}
Body: {body_preview}

Reply in JSON only: {{"classification": "category", "confidence": 0.0-1.0, "reasoning": "short reason"}}""",
        batch_prompt="""Classify each email as spam, newsletter, or keep:

{emails}

Reply with a JSON array: [{{"classification": "category", "confidence": 0.0-1.0}}]""",
        workers=6,
        batch_size=5,
        concurrency=6,
        description="Strong on structured tasks, slower.",
        speed="slow",
    ),
    "mistral": ModelProfile(
        single_prompt="""[INST] Classify this email into exactly one category: spam, newsletter, or keep.

- spam: unsolicited promotion, phishing, scams, junk mail
- newsletter: legitimate subscription emails, marketing from known companies
- keep: personal emails, work correspondence, receipts, important notifications

From: {from_addr}
Subject: {subject}
Body: {body_preview}

Respond with only JSON: {{"classification": "spam|newsletter|keep", "confidence": 0.0-1.0, "reasoning": "short reason"}} [/INST]""",
        batch_prompt="""[INST] Classify each email as spam, newsletter, or keep.

{emails}

Respond with a JSON array only: [{{"classification": "category", "confidence": score}}] [/INST]""",
        workers=8,
        batch_size=6,
        concurrency=8,
        description="Efficient model, good with nuanced text.",
        speed="medium",
    ),
    "tinyllama": ModelProfile(
        single_prompt="""Email type? spam, newsletter, or keep

From: {from_addr}
Subject: {subject}
Body: {body_preview}

spam=junk newsletter=subscriptions keep=important

JSON: {{"classification":"TYPE","confidence":0.9}}""",
        batch_prompt="""Type each email: spam, newsletter, keep

{emails}

JSON: [{{"classification":"TYPE","confidence":0.9}}]""",
        workers=20,
        batch_size=10,
        concurrency=16,
        description="Tiny model. Lower accuracy, maximum speed.",
        speed="fast",
    ),
    "default": ModelProfile(
        single_prompt="""Classify this email as spam, newsletter, or keep.

spam = junk, scam, phishing, unwanted ads
newsletter = subscriptions, marketing, updates from companies
keep = personal, work, receipts, important

From: {from_addr}
Subject: {subject}
Body: {body_preview}

Reply JSON only: {{"classification":"spam|newsletter|keep","confidence":0.9,"reasoning":"short reason"}}""",
        batch_prompt="""Classify each email as spam, newsletter, or keep.

spam=junk/scam newsletter=subscriptions/marketing keep=personal/work/important

{emails}

Reply with a JSON array: [{{"classification":"spam|newsletter|keep","confidence":0.9}}]""",
        workers=8,
        batch_size=6,
        concurrency=8,
        description="Generic settings for unrecognized models.",
        speed="medium",
    ),
}


def get_profile(model: str) -> ModelProfile:
    """Return the profile for a model name, matching the longest family key first."""
    model_lower = model.lower()
    families = sorted(
        (key for key in MODEL_PROFILES if key != "default"), key=len, reverse=True
    )
    for family in families:
        if family in model_lower:
            return MODEL_PROFILES[family]
    return MODEL_PROFILES["default"]


def supported_families() -> list[str]:
    return [key for key in MODEL_PROFILES if key != "default"]
