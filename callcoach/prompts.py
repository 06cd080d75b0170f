"""
CallCoach prompt builders (pt-BR product locale).

Coach prompt: script stages + coach persona in the system part, the last
MAX_COACH_TURNS timestamped turns and current call state in the user part.
"""

import json
from datetime import datetime, timezone
from typing import List

from .trigger_detector import TriggerResult


MAX_COACH_TURNS = 50
MAX_SUMMARY_TURNS = 15


COACH_RESPONSE_SCHEMA = """{
  "currentStep": number,
  "coaching": {
    "type": "tip" | "alert" | "reinforcement" | "objection" | "buying_signal",
    "urgency": "low" | "medium" | "high",
    "content": "conselho máx 280 chars"
  } | null,
  "nextStep": {
    "action": "próximo passo sugerido",
    "question": "pergunta sugerida" | null
  } | null,
  "leadProfile": {
    "type": "emotional" | "rational" | "skeptical" | "anxious" | "enthusiastic",
    "concerns": ["preocupações"],
    "interests": ["interesses"],
    "buyingSignals": ["sinais"]
  } | null,
  "stageChanged": boolean,
  "shouldSkipResponse": boolean
}"""

SUMMARY_RESPONSE_SCHEMA = """{
  "status": "Fase da negociação (ex: Descoberta de Dores, Contorno de Objeção, Fechamento)",
  "summary_points": ["Ponto estratégico 1", "Ponto estratégico 2", "Ponto estratégico 3"],
  "sentiment": "Positive" | "Neutral" | "Negative" | "Tense",
  "spin_phase": "Situation" | "Problem" | "Implication" | "Need-Payoff"
}"""

POST_CALL_RESPONSE_SCHEMA = """{
  "script_adherence_score": number (0-100),
  "strengths": ["pontos fortes do vendedor"],
  "improvements": ["pontos a melhorar"],
  "objections_faced": [{"objection": "texto", "handled": boolean, "response": "como respondeu"}],
  "buying_signals": ["sinais detectados"],
  "lead_sentiment": "POSITIVE" | "NEUTRAL" | "NEGATIVE" | "MIXED",
  "result": "CONVERTED" | "FOLLOW_UP" | "LOST" | "UNKNOWN",
  "ai_notes": "resumo livre com recomendações para a próxima interação"
}"""


def _clock(timestamp_ms: int) -> str:
    return datetime.fromtimestamp(timestamp_ms / 1000, tz=timezone.utc).strftime("%H:%M:%S")


def format_turns(entries, timestamps: bool = True) -> str:
    lines = []
    for entry in entries:
        if timestamps:
            lines.append(f"[{_clock(entry.timestamp)}] {entry.speaker}: {entry.text}")
        else:
            lines.append(f"{entry.speaker}: {entry.text}")
    return "\n".join(lines)


# ============ COACH ============

def build_coach_system_prompt(script) -> str:
    personality = script.coach_personality or "Estratégico e direto"
    tone = script.coach_tone or "Profissional"
    intervention = script.intervention_level or "Médio"

    steps = []
    for step in script.steps:
        steps.append(
            f"**Etapa {step.step_order}: {step.name}**\n"
            f"Objetivo: {step.description}\n"
            f"Perguntas-chave: {', '.join(step.key_questions)}\n"
            f"Transição: {step.transition_criteria}\n"
            f"Tempo: {step.estimated_duration}s"
        )

    return f"""Você é um coach de vendas de elite, invisível, sussurrando no ouvido do vendedor durante uma call ao vivo.

## SUA PERSONALIDADE
{personality}
Tom: {tone}
Nível de intervenção: {intervention}

## REGRAS ABSOLUTAS
1. Seus conselhos são para o VENDEDOR. O lead nunca verá isso.
2. BREVE: máximo 2-3 frases. Vendedor lê em 2 segundos durante a call.
3. ESTRATÉGICO: referencie algo ESPECÍFICO da conversa. Nunca genérico.
4. Se está indo bem, diga. Reforço positivo motiva.
5. Se está errando, seja direto: "Você está falando demais. Pergunte e ESCUTE."
6. Sinais de compra: ALERTE COM URGÊNCIA. É hora de fechar.
7. Nunca sugira manipulação antiética.
8. Responda em português brasileiro.

## SCRIPT DE VENDAS: {script.name}

### ETAPAS:
{chr(10).join(steps)}
"""


def build_coach_user_prompt(session, trigger: TriggerResult) -> str:
    recent = format_turns(session.recent_turns(MAX_COACH_TURNS))
    profile = json.dumps(session.lead_profile or {}, ensure_ascii=False)

    return f"""## TRANSCRIÇÃO (últimos turnos)
{recent}

## ESTADO ATUAL
- Etapa atual: {session.current_step}
- Perfil do lead: {profile}
- Último coaching: "{session.last_coaching or ''}"
- Trigger: {trigger.reason}

Analise e dê coaching. Se não há nada útil, retorne shouldSkipResponse: true.
"""


# ============ LIVE SUMMARY (manager-facing) ============

SUMMARY_SYSTEM_PROMPT = """Você é um Assistente Executivo de Vendas que monitora chamadas ao vivo.
Seu objetivo: fornecer um "Resumo Estratégico" para o Gestor de Vendas a cada 20 segundos.

# REGRAS
1. IGNORE falas triviais ("Olá", "Tudo bem?", "Então...", silêncios).
2. FOQUE APENAS em:
   - Dores do Cliente: quais problemas, insatisfações ou necessidades foram mencionados?
   - Status da Negociação: em que ponto estamos? (Descoberta, Apresentação, Objeção, Fechamento)
   - Clima da Call: o lead está engajado, resistente, ansioso, entusiasta?
3. Se nada relevante aconteceu, diga "Conversa em fase inicial, sem insights estratégicos ainda."
4. Máximo 3 pontos em summary_points. Cada ponto deve ser uma frase curta e acionável.
5. Responda em português brasileiro.
"""


def build_summary_user_prompt(session) -> str:
    recent = format_turns(session.recent_turns(MAX_SUMMARY_TURNS), timestamps=False)
    return f"""Transcrição recente da chamada:
{recent}

Gere o Resumo Estratégico em JSON.
"""


# ============ POST-CALL ============

POST_CALL_SYSTEM_PROMPT = (
    "Você é um analista de vendas. Analise a transcrição completa da call "
    "e gere um relatório JSON."
)


def build_post_call_user_prompt(session, script_name: str, step_names: List[str]) -> str:
    transcript = "\n".join(f"[{entry.speaker.upper()}] {entry.text}" for entry in session.transcript)
    return f"""Script: {script_name}
Etapas: {' → '.join(step_names)}

Transcrição completa:
{transcript}
"""
