import logging
import uuid
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from openai import OpenAI

from errors import AIUnavailable
from mongo import MEAL_PLANS, DocumentStore, where

CONSULT_FALLBACK = (
    "I encountered an issue processing your request. Please check your connection and try again. "
    "For urgent matters, consult standard medical resources."
)
MEAL_PLAN_FALLBACK = (
    "We couldn't generate a meal plan right now. Please try again in a few minutes, "
    "or talk to your doctor or a registered dietitian for personalised advice."
)


class AIGateway:
    """Thin wrapper over the chat completions API. Any failure surfaces as AIUnavailable."""

    def __init__(self, api_key: Optional[str] = None, model: str = "gpt-4o-mini",
                 temperature: float = 0.7, client: Any = None):
        self.model = model
        self.temperature = temperature
        if client is not None:
            self.client = client
        elif api_key:
            self.client = OpenAI(api_key=api_key)
        else:
            logging.warning("OPENAI_API_KEY not set, AI features will use fallback responses")
            self.client = None

    def generate(self, prompt: str, temperature: Optional[float] = None) -> str:
        if self.client is None:
            raise AIUnavailable("AI service not configured")
        try:
            response = self.client.chat.completions.create(
                model=self.model,
                messages=[{"role": "user", "content": prompt}],
                temperature=self.temperature if temperature is None else temperature,
            )
            text = response.choices[0].message.content
        except Exception as e:
            logging.error(f"Error in generate: {str(e)}")
            raise AIUnavailable("AI service unavailable") from e
        if not text or not text.strip():
            raise AIUnavailable("AI service returned an empty response")
        return text.strip()


def build_consult_prompt(user_name: str, history: List[Dict[str, str]], query: str) -> str:
    context = "\n".join(f"{m.get('sender', 'user')}: {m.get('text', '')}" for m in history[-3:])
    return f"""
You are FelanoCareAI, a professional medical assistant.
The user is {user_name or 'a patient'} seeking clinical guidance.

Current conversation context:
{context}

New query: {query}

Provide a concise, evidence-based response in MARKDOWN format considering:
- Relevant differential diagnoses
- Recommended diagnostic workup
- Treatment options with supporting evidence
- Potential drug interactions if medications mentioned
- Red flags requiring immediate attention

Use **bold** for important terms, bullet points for lists and headings for sections.
Always emphasize the need for clinical judgment.
""".strip()


def build_meal_plan_prompt(nutrition: Dict[str, Any]) -> str:
    def listed(key: str) -> str:
        return ", ".join(nutrition.get(key) or []) or "none"

    return f"""
Create a detailed 7-day meal plan for a {nutrition.get('age')}-year-old individual with the following characteristics:
- Weight: {nutrition.get('weight')} kg
- Height: {nutrition.get('height')} cm
- Activity level: {nutrition.get('activityLevel', 'moderate')}
- Dietary preferences: {listed('dietaryPreferences')}
- Health goals: {listed('healthGoals')}
- Restrictions: {listed('restrictions')}

Provide the plan in MARKDOWN format with:
- Daily breakdown (breakfast, lunch, dinner, snacks)
- Calorie estimates for each meal
- Macronutrient breakdown (protein, carbs, fats)
- Preparation instructions
- Shopping list for the week
- Nutritional tips specific to the user's goals
""".strip()


def consult(gateway: AIGateway, user_name: str, history: List[Dict[str, str]], query: str) -> Dict[str, Any]:
    try:
        text = gateway.generate(build_consult_prompt(user_name, history, query))
        fallback = False
    except AIUnavailable:
        text, fallback = CONSULT_FALLBACK, True
    return {
        "text": text,
        "sender": "ai",
        "fallback": fallback,
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }


def generate_meal_plan(gateway: AIGateway, nutrition: Dict[str, Any]) -> Dict[str, Any]:
    try:
        content = gateway.generate(build_meal_plan_prompt(nutrition))
        fallback = False
    except AIUnavailable:
        content, fallback = MEAL_PLAN_FALLBACK, True
    return {
        "content": content,
        "fallback": fallback,
        "createdAt": datetime.now(timezone.utc).isoformat(),
        "userData": nutrition,
    }


def save_meal_plan(store: DocumentStore, user_id: str, user_name: str, plan: Dict[str, Any]) -> dict:
    plan_id = f"plan{uuid.uuid4().hex[:12]}"
    record = {
        "userId": user_id,
        "userName": user_name,
        "content": plan["content"],
        "userData": plan.get("userData") or {},
        "createdAt": datetime.now(timezone.utc),
    }
    store.set(MEAL_PLANS, plan_id, record)
    return {"id": plan_id, **record}


def list_meal_plans(store: DocumentStore, user_id: str) -> List[dict]:
    plans = store.query(MEAL_PLANS, [where("userId", "==", user_id)])
    return sorted(plans, key=lambda p: str(p.get("createdAt", "")), reverse=True)
