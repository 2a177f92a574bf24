import os
import logging
from dataclasses import dataclass
from typing import Dict, List, Optional

from groq import Groq
from dotenv import load_dotenv

from physio.errors import ProviderCallFailed, ProviderUnavailable
from physio.models import AGENT, ConversationContext, PhysioResponse

load_dotenv()

logger = logging.getLogger(__name__)

DEFAULT_MODEL = "llama-3.3-70b-versatile"
HISTORY_WINDOW = 10

OFFLINE_RESPONSE = (
    "I'm currently offline. Please add your Groq API key to enable AI features. "
    "For now, I can help you with basic pain assessment and exercise guidance."
)
RETRY_LATER_RESPONSE = "I'm having trouble connecting right now. Please try again later."
EMPTY_REPLY_RESPONSE = "I'm sorry, I couldn't process that. Could you please try again?"
EXERCISE_FALLBACK_RESPONSE = "I can help you with some exercises. Let's start with a gentle one."
EXERCISE_EMPTY_REPLY_RESPONSE = "I'll help you with some exercises. Let me show you a safe one to start with."

PHYSIO_SYSTEM_PROMPT = """You are Fit4Life, a professional AI physiotherapy assistant. Your role is to:

1. **Assess and Understand**: Help patients describe their pain levels (1-10) and locations
2. **Educate**: Provide clear, simple explanations about physiotherapy concepts
3. **Guide**: Suggest appropriate exercises and self-care techniques
4. **Support**: Offer encouragement and motivation for recovery
5. **Safety**: Always recommend seeking professional help for severe or persistent issues

**Key Guidelines:**
- Be empathetic, professional, and encouraging
- Use simple, clear language suitable for voice interaction
- Focus on UK NHS physiotherapy standards
- Keep responses concise but informative (2-3 sentences for voice)
- Ask follow-up questions to gather more information
- Provide actionable advice when possible

**Current Context:**
- Patient pain level: {pain_level}
- Pain location: {pain_location}
- Conversation step: {current_step}
- Medical conditions: {medical_conditions}

**Response Format:**
Respond naturally as if having a conversation. Your response should be:
- Conversational and warm
- Appropriate for voice interaction
- Helpful and actionable
- Professional but approachable"""

EXERCISE_PROMPT = """Based on the patient's pain level {pain_level}/10 and location "{pain_location}", suggest 1-2 appropriate exercises.

Guidelines:
- Pain level 1-3: Gentle stretching and mobility exercises
- Pain level 4-6: Moderate strengthening with proper form
- Pain level 7-10: Rest, gentle movement, and professional consultation

Location-specific considerations:
- Neck: Gentle neck stretches, shoulder rolls
- Back: Cat-cow stretches, gentle core exercises
- Shoulder: Range of motion exercises, wall slides
- Knee: Quad sets, gentle leg raises
- Hip: Hip flexor stretches, gentle squats

Provide:
1. Exercise name and description
2. How to perform it safely
3. Expected benefits
4. When to stop (pain increase, etc.)

Keep it conversational and encouraging."""


def exercise_tier(pain_level):
    """Guidance tier for a 1-10 pain level: gentle, moderate or rest"""
    if pain_level <= 3:
        return "gentle"
    if pain_level <= 6:
        return "moderate"
    return "rest"


@dataclass(frozen=True)
class Completion:
    text: Optional[str]
    finish_reason: Optional[str]


class GroqChatProvider:
    """Single chat-completions call against the Groq API"""

    def __init__(self, api_key, model=DEFAULT_MODEL, timeout=30.0, client=None):
        if not api_key:
            raise ProviderUnavailable("GROQ_API_KEY environment variable not set")
        self.model = model
        # Explicitly pass only the api_key so proxy settings are not picked up
        self.client = client or Groq(api_key=api_key, timeout=timeout)

    def complete(self, system_prompt: str, history: List[Dict[str, str]], user_message: Optional[str],
                 max_tokens: int, temperature: float) -> Completion:
        messages = [{"role": "system", "content": system_prompt}]
        messages.extend(history)
        if user_message is not None:
            messages.append({"role": "user", "content": user_message})

        try:
            chat_completion = self.client.chat.completions.create(
                messages=messages,
                model=self.model,
                max_tokens=max_tokens,
                temperature=temperature,
            )
        except Exception as api_error:
            logger.error(f"Error during Groq API call: {api_error}", exc_info=True)
            raise ProviderCallFailed(str(api_error)) from api_error

        try:
            choice = chat_completion.choices[0]
            return Completion(text=choice.message.content, finish_reason=choice.finish_reason)
        except (AttributeError, IndexError, TypeError) as parse_error:
            logger.error(f"Malformed response from Groq API: {parse_error}")
            raise ProviderCallFailed(f"Malformed response: {parse_error}") from parse_error


class ResponseGenerator:
    """
    Produces agent replies for the intake dialogue.

    Availability is decided once, at construction, from the presence of
    credentials. When no provider is configured every call returns the
    offline fallback without touching the network.
    """

    def __init__(self, provider=None):
        self.provider = provider

    @classmethod
    def from_environment(cls, api_key=None, model=DEFAULT_MODEL, timeout=30.0):
        api_key = api_key if api_key is not None else os.environ.get("GROQ_API_KEY")
        if not api_key:
            logger.warning("GROQ_API_KEY not set - response generator running in offline mode")
            return cls(provider=None)
        try:
            return cls(provider=GroqChatProvider(api_key, model=model, timeout=timeout))
        except Exception as client_error:
            logger.error(f"Error initializing Groq client: {client_error}", exc_info=True)
            return cls(provider=None)

    def is_available(self) -> bool:
        return self.provider is not None

    def generate_response(self, utterance: str, context: ConversationContext) -> PhysioResponse:
        if not self.is_available():
            return PhysioResponse(text=OFFLINE_RESPONSE, should_speak=False, confidence=0.0)

        history = build_history(context)
        system_prompt = build_system_prompt(context)
        logger.debug(f"Generating response with {len(history)} previous messages")

        try:
            completion = self.provider.complete(system_prompt, history, utterance,
                                                max_tokens=200, temperature=0.7)
        except ProviderCallFailed as e:
            logger.warning(f"Provider call failed, returning retry message: {e}")
            return PhysioResponse(text=RETRY_LATER_RESPONSE, should_speak=False, confidence=0.0)

        response_text = completion.text or EMPTY_REPLY_RESPONSE

        return PhysioResponse(
            text=response_text,
            should_speak=should_speak(response_text),
            confidence=0.9 if completion.finish_reason == "stop" else 0.7,
            next_step=next_step(utterance, context),
        )

    def generate_exercise_recommendation(self, pain_level: int, pain_location: str,
                                         context: ConversationContext) -> PhysioResponse:
        if not self.is_available():
            return PhysioResponse(text=EXERCISE_FALLBACK_RESPONSE, should_speak=True, confidence=0.7)

        logger.info(f"Requesting {exercise_tier(pain_level)} exercise recommendation "
                    f"for {pain_location} (session {context.session_id})")
        prompt = EXERCISE_PROMPT.format(pain_level=pain_level, pain_location=pain_location)

        try:
            completion = self.provider.complete(prompt, [], None, max_tokens=300, temperature=0.6)
        except ProviderCallFailed as e:
            logger.warning(f"Exercise recommendation failed: {e}")
            return PhysioResponse(text=EXERCISE_FALLBACK_RESPONSE, should_speak=True, confidence=0.7)

        return PhysioResponse(
            text=completion.text or EXERCISE_EMPTY_REPLY_RESPONSE,
            should_speak=True,
            confidence=0.9,
            next_step=2,
        )


def build_history(context, window=HISTORY_WINDOW):
    """Last `window` context messages in chat-completions format"""
    history = []
    for message in context.messages[-window:]:
        role = "assistant" if message.role == AGENT else message.role
        history.append({"role": role, "content": message.text})
    return history


def build_system_prompt(context):
    info = context.patient_info
    pain_level = info.pain_level if info and info.pain_level is not None else 'Not assessed'
    pain_location = info.pain_location if info and info.pain_location else 'Not specified'
    conditions = ', '.join(info.medical_conditions) if info and info.medical_conditions else 'None mentioned'
    return PHYSIO_SYSTEM_PROMPT.format(
        pain_level=pain_level,
        pain_location=pain_location,
        current_step=context.current_step,
        medical_conditions=conditions,
    )


def should_speak(response_text):
    lowered = response_text.lower()
    return 'sorry' not in lowered and len(response_text) >= 10 and 'error' not in lowered


def next_step(utterance, context):
    step = context.current_step
    pain_known = context.patient_info is not None and context.patient_info.pain_level is not None
    if step == 0 and pain_known:
        return 1
    if step == 1 and 'exercise' in utterance.lower():
        return 2
    return step
