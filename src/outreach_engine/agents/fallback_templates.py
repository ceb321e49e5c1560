"""Fallback templates — used when a tenant has no template configured.

Tone: friendly local service business texting its own customers.
Every proactive outbound message ends with the opt-out notice.
"""

OPT_OUT_NOTICE = "Reply STOP to opt out."

# ---------------------------------------------------------------------------
# Review requests
# ---------------------------------------------------------------------------

REVIEW_INITIAL = (
    "Hi {customer_name}! We hope you're happy with the {job_type} we completed for you{job_date}. "
    "Would you mind leaving us a quick review? It helps us improve and helps others find great "
    "service! Click here: {review_link}"
)

REVIEW_FOLLOWUP = (
    "Just following up on our review request. Your feedback means a lot to us! {review_link}"
)

NEGATIVE_REVIEW_ACK = (
    "We appreciate your feedback. A team member will contact you shortly "
    "to address your concerns."
)

POSITIVE_REVIEW_ACK = "Thank you for your positive review!"

NEGATIVE_REVIEW_ACTIONS = [
    "Call customer within 24 hours",
    "Understand concerns and offer resolution",
    "Follow up to ensure satisfaction",
    "Request review update if issue resolved",
]

# ---------------------------------------------------------------------------
# Lead nurture: three escalating variants per trigger
# ---------------------------------------------------------------------------

NURTURE_SEQUENCES = {
    "missed_call": [
        "Hi {lead_name}! I noticed you called us earlier. How can we help you today? "
        "Reply with your question or say YES to schedule a call back.",
        "Just following up on your call. We're here to help! What service are you interested in?",
        "Still interested in our services? Let us know and we'll get you taken care of right away.",
    ],
    "abandoned_quote": [
        "Hi {lead_name}! I see you started a quote request. Can I help you complete it? "
        "Just reply YES and I'll assist you.",
        "Your quote is ready! Reply YES to see it or let me know if you have any questions.",
        "Still need that quote? We're here to help. Just say the word!",
    ],
    "no_response": [
        "Hi {lead_name}! Just checking in. Are you still looking for {service}?",
        "Wanted to follow up. Do you have any questions about our services?",
        "We're here when you're ready. Let us know how we can help!",
    ],
    "cold_lead": [
        "Hi {lead_name}! We noticed you were interested in {service}. Can we help you today?",
        "Just reaching out to see if you're still looking for {service_or_project}?",
        "We'd love to help with your project. Are you still interested?",
    ],
}

# ---------------------------------------------------------------------------
# Lead nurture: replies to inbound messages
# ---------------------------------------------------------------------------

REPLIES = {
    "question": (
        "Great question! Our team specializes in that. Would you like to schedule a quick call "
        "to discuss your specific needs? Reply YES to book a time."
    ),
    "pricing": (
        "Pricing varies based on your specific needs. I'd love to provide you with an accurate "
        "quote. Can we schedule a brief call to understand your requirements? Reply YES to book."
    ),
    "scheduling": (
        "We have availability this week! What day works best for you? Reply with a day "
        "(Monday, Tuesday, etc.) and I'll check our schedule."
    ),
    "affirmative": (
        "Excellent! Let's get you scheduled. What day works best for you this week? "
        "Reply with your preferred day and time."
    ),
    "generic": (
        "Thanks for getting back to me! I'd love to help you with this. Would you like to "
        "schedule a call to discuss? Reply YES or let me know what questions you have."
    ),
}

HANDOFF_ACK = "Thank you for your message. A team member will be in touch with you shortly."

OPT_OUT_CONFIRMATION = "You've been unsubscribed from our automated messages. Thank you!"


def with_opt_out(message: str) -> str:
    return f"{message}\n\n{OPT_OUT_NOTICE}"


def get_review_initial(
    customer_name: str,
    job_type: str | None,
    review_link: str,
    job_date: str | None = None,
) -> str:
    message = REVIEW_INITIAL.format(
        customer_name=customer_name,
        job_type=job_type or "service",
        job_date=f" on {job_date}" if job_date else "",
        review_link=review_link,
    )
    return with_opt_out(message)


def get_review_followup(review_link: str) -> str:
    return with_opt_out(REVIEW_FOLLOWUP.format(review_link=review_link))


def get_nurture_message(trigger_type: str, step: int, **kwargs) -> str:
    """Canned message for a 1-based step. Steps past the bank reuse its last variant."""
    variants = NURTURE_SEQUENCES.get(trigger_type, NURTURE_SEQUENCES["missed_call"])
    template = variants[min(max(step, 1), len(variants)) - 1]
    service = kwargs.get("service")
    message = template.format(
        lead_name=kwargs.get("lead_name") or "there",
        service=service or "our services",
        service_or_project=service or "help with your project",
    )
    return with_opt_out(message)
