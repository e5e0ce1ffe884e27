"""
Prompt templates for the medical assistant.

The disclaimer lives in every system prompt and is appended to answers only
when it matters (first answer of a chat, or a treatment/diagnosis question).
"""
from datetime import datetime
from typing import Any, Dict, Optional

from backend.src.models.chat import ContextType

MEDICAL_DISCLAIMER = (
    "\n\n**Important Medical Disclaimer:**\n"
    "This information is for educational purposes only and does not constitute medical advice. "
    "Please consult with your healthcare provider for medical decisions, diagnosis, or treatment. "
    "In case of emergency, call emergency services immediately."
)

_PREAMBLE = "You are a helpful AI assistant for a healthcare application."

SYSTEM_PROMPTS = {
    ContextType.VISIT: f"""{_PREAMBLE} You have access to the patient's visit record. Your role is to:
1. Help patients understand their visit details, test results, and medical reports
2. Explain medical terminology in simple language
3. Answer questions about their prescriptions, lab results, and the doctor's recommendations

Guidelines:
- Be empathetic, clear, and patient-focused
- Reference specific data from the visit record when answering
- If you don't have the information, say so clearly
- Encourage users to contact their doctor for medical decisions

You help with understanding existing records, not with new diagnosis.""",

    ContextType.APPOINTMENT: f"""{_PREAMBLE} You have access to the patient's appointment information. Your role is to:
1. Help patients understand their appointment details (date, time, doctor, specialty)
2. Answer questions about appointment preparation
3. Give general information about the specialty or appointment type

Guidelines:
- Give general preparation guidance, but defer to the doctor's specific instructions
- Encourage users to contact the hospital for changes or special requirements
- Be clear and concise""",

    ContextType.PRESCRIPTION: f"""{_PREAMBLE} You have access to the patient's prescription information. Your role is to:
1. Help patients understand their prescribed medications
2. Explain dosage instructions and timing
3. Give general information about medications (purpose, common side effects)

Guidelines:
- Reference the specific prescriptions from the record
- For side effects or interactions, send them to their doctor or pharmacist
- Never suggest changing dosages or stopping medications""",

    ContextType.LAB_REPORT: f"""{_PREAMBLE} You have access to the patient's laboratory results. Your role is to:
1. Help patients understand their lab results
2. Explain what different tests measure
3. Give context for normal ranges

Guidelines:
- Explain lab values in simple terms and reference the actual results
- Interpretation and diagnosis belong to their doctor
- For abnormal results, encourage follow-up with their healthcare provider""",

    ContextType.GENERAL: f"""{_PREAMBLE} Your role is to:
1. Provide general health and wellness information
2. Answer common health questions and explain basic medical concepts
3. Guide users on how to use the app

Guidelines:
- Provide accurate, evidence-based information
- You cannot diagnose conditions or prescribe treatments
- For specific concerns, advise consulting a healthcare provider""",
}

CONTEXT_LABELS = {
    ContextType.VISIT: "Visit",
    ContextType.APPOINTMENT: "Appointment",
    ContextType.PRESCRIPTION: "Prescription",
    ContextType.LAB_REPORT: "Lab Report",
    ContextType.GENERAL: "General",
}

DISCLAIMER_KEYWORDS = (
    "diagnose", "diagnosis", "treatment", "should i", "what should",
    "is this serious", "do i need", "is it safe", "can i take",
    "should i stop", "should i start", "recommend", "advise",
    "what medicine", "which medication",
)


def _context_type(value) -> ContextType:
    try:
        return ContextType(value)
    except ValueError:
        return ContextType.GENERAL


def get_system_prompt(context_type) -> str:
    return SYSTEM_PROMPTS[_context_type(context_type)]


def build_context_text(
    context_type,
    context_id: Optional[str],
    context_data: Optional[Dict[str, Any]],
    subject_name: Optional[str] = None,
) -> str:
    """Render the record pointers and key/value context into prompt text."""
    ctype = _context_type(context_type)
    lines = []
    if subject_name:
        lines.append(f"Patient: {subject_name}")
    if ctype is not ContextType.GENERAL:
        lines.append(f"Context: {CONTEXT_LABELS[ctype]}")
    if context_id:
        lines.append(f"{CONTEXT_LABELS[ctype]} ID: {context_id}")
    for key, value in (context_data or {}).items():
        if value is None or value == "":
            continue
        label = str(key).replace("_", " ").strip().capitalize()
        lines.append(f"{label}: {value}")
    if not lines:
        return ""
    return "PATIENT CONTEXT:\n" + "\n".join(lines)


def generate_title(context_type, created: datetime) -> str:
    ctype = _context_type(context_type)
    date = created.strftime("%Y-%m-%d")
    if ctype is ContextType.GENERAL:
        return f"General Health Chat - {date}"
    return f"Chat about {CONTEXT_LABELS[ctype]} on {date}"


def should_include_disclaimer(user_message: str, is_first_response: bool) -> bool:
    if is_first_response:
        return True
    lowered = user_message.lower()
    return any(keyword in lowered for keyword in DISCLAIMER_KEYWORDS)


def append_disclaimer_if_needed(answer: str, user_message: str, is_first_response: bool) -> str:
    if should_include_disclaimer(user_message, is_first_response):
        return answer + MEDICAL_DISCLAIMER
    return answer
