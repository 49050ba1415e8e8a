import json
import logging
from typing import Optional

from openai import OpenAI
from pydantic import ValidationError

from transit_watch.config import Settings, get_settings
from transit_watch.errors import AssessmentError
from transit_watch.schemas import AIAssessment, AssessmentContext

logger = logging.getLogger(__name__)

MAX_TIMELINE_ENTRIES = 20

SYSTEM_PROMPT = (
    "You are an expert shipping logistics analyst helping e-commerce merchants "
    "protect their customer experience. Return only valid JSON."
)

PROMPT_TEMPLATE = """## SHIPMENT DATA
- Tracking Number: {tracking_number}
- Carrier: {carrier}
- Origin: {origin} -> Destination: {destination}
- Label Created: {label_date} ({days_since_label} days ago)
- First Carrier Scan: {first_scan}
- Latest Scan: {last_scan} ({days_silent} days silent)

## COMPLETE TRACKING TIMELINE
{timeline}

## TIME IN EACH STATE (days)
{states}

## CARRIER CONTEXT
- Typical transit time for this route: {typical} days

## YOUR ANALYSIS
All shipments you are analyzing are past their expected transit time and need attention.

Respond ONLY with a JSON object in this exact format:
{{
  "statusBadge": "MOVING" | "DELAYED" | "WATCHLIST" | "STALLED" | "STUCK" | "RETURNING" | "LOST",
  "riskLevel": "low" | "medium" | "high" | "critical",
  "customerSentiment": "what the end customer is likely thinking",
  "merchantAction": "recommended action for the merchant",
  "reshipmentUrgency": number 0-100,
  "keyInsight": "one specific observation from the timeline",
  "nextMilestone": "what should happen next and when",
  "confidence": number 0-100
}}

STATUS BADGE OPTIONS:
- MOVING: Still progressing, but slower than expected
- DELAYED: Behind schedule but still moving
- WATCHLIST: Needs close monitoring, uncertain outcome
- STALLED: No movement for concerning period
- STUCK: Appears stuck at a specific facility
- RETURNING: Signs of return to sender
- LOST: High probability package is lost

RESHIPMENT URGENCY SCORING:
- 0-30: No action needed
- 31-60: Monitor closely
- 61-80: Consider reshipment
- 81-100: Reship immediately"""


def build_prompt(ctx: AssessmentContext) -> str:
    if ctx.checkpoints:
        lines = []
        for cp in ctx.checkpoints[:MAX_TIMELINE_ENTRIES]:
            line = f"{cp.checkpoint_time.isoformat()} - {cp.raw_description}"
            if cp.raw_location:
                line += f", {cp.raw_location}"
            lines.append(line)
        timeline = "\n".join(lines)
    else:
        timeline = "No checkpoint data available"

    states = "\n".join(f"- {k}: {v:.1f}" for k, v in ctx.time_in_states.items()) or "Unknown"

    return PROMPT_TEMPLATE.format(
        tracking_number=ctx.tracking_number or "N/A",
        carrier=ctx.carrier or "Unknown",
        origin=ctx.origin_country or "Unknown",
        destination=ctx.destination_country or "Unknown",
        label_date=ctx.label_created_at.isoformat() if ctx.label_created_at else "Unknown",
        days_since_label=ctx.days_since_label if ctx.days_since_label is not None else "N/A",
        first_scan=ctx.first_scan_at.isoformat() if ctx.first_scan_at else "Not yet scanned",
        last_scan=ctx.last_scan_at.isoformat() if ctx.last_scan_at else "No scans",
        days_silent=ctx.days_since_last_scan if ctx.days_since_last_scan is not None else "N/A",
        timeline=timeline,
        states=states,
        typical=ctx.typical_transit_days if ctx.typical_transit_days is not None else "Unknown",
    )


class OpenAIAssessor:
    """
    AI narrative and escalation signal.
    An unusable payload yields None; a failed call raises AssessmentError.
    """

    def __init__(self, settings: Optional[Settings] = None, client: Optional[OpenAI] = None):
        settings = settings or get_settings()
        self.model = settings.openai_model
        if client is None:
            if not settings.openai_api_key:
                raise ValueError("OPENAI_API_KEY environment variable not set.")
            client = OpenAI(api_key=settings.openai_api_key)
        self.client = client

    def assess(self, ctx: AssessmentContext) -> Optional[AIAssessment]:
        try:
            response = self.client.chat.completions.create(
                model=self.model,
                messages=[
                    {"role": "system", "content": SYSTEM_PROMPT},
                    {"role": "user", "content": build_prompt(ctx)},
                ],
                response_format={"type": "json_object"},
                temperature=0.1,
            )
            content = response.choices[0].message.content
        except Exception as e:
            raise AssessmentError(f"assessment call failed for {ctx.shipment_id}: {e}") from e

        try:
            return AIAssessment(**json.loads(content))
        except (ValidationError, json.JSONDecodeError, TypeError) as e:
            logger.error("Invalid assessment payload for %s: %s", ctx.shipment_id, e)
            return None
