"""
Chat message builders for the news operations.

System prompts come from the cost optimizer's per-operation plans; the
builders here only assemble the user turn.
"""

from typing import Dict, List, Mapping

from ..core.cache import PromptPlan

Messages = List[Dict[str, str]]

CATEGORIZE_CONTENT_CHARS = 400
NO_TITLE = "Sin título"
NO_CONTENT = "Sin contenido"

REWRITE_INSTRUCTIONS = (
    "Actúa como un periodista experto y reescribe completamente esta noticia, "
    "creando una versión nueva de unos 5 o 6 párrafos no tan extensos que mantenga "
    "los hechos principales con un enfoque fresco y diferente, usando párrafos bien "
    "separados con doble salto de línea (\\n\\n).\n\n"
    "1. ESTRUCTURA: un título nuevo e impactante, un párrafo introductorio fuerte, "
    "subtítulos para organizar la información y una conclusión.\n"
    "2. CONTENIDO: contexto relevante, impacto en distintos sectores y perspectivas de expertos.\n"
    "3. ESTILO: tono profesional pero accesible y transiciones suaves entre párrafos."
)


def _with_system(plan: PromptPlan, user_content: str) -> Messages:
    return [
        {"role": "system", "content": plan.prompt},
        {"role": "user", "content": user_content},
    ]


def categorize_payload(title: str, content: str, url: str = "") -> Dict[str, str]:
    """Request payload for categorization; content is cut to a short excerpt."""
    excerpt = content[:CATEGORIZE_CONTENT_CHARS] + "..." if content else NO_CONTENT
    return {"title": title or NO_TITLE, "content": excerpt, "url": url or ""}


def categorize_messages(plan: PromptPlan, payload: Mapping[str, str]) -> Messages:
    user = (
        f'Categoriza: Título="{payload["title"]}" '
        f'Contenido="{payload["content"]}" URL="{payload["url"]}"'
    )
    return _with_system(plan, user)


def rewrite_messages(plan: PromptPlan, payload: Mapping[str, str]) -> Messages:
    user = (
        f"{REWRITE_INSTRUCTIONS}\n\n"
        f"NOTICIA ORIGINAL:\nTítulo: {payload['title']}\n\nContenido:\n{payload['content']}\n\n"
        'FORMATO DE RESPUESTA:\n{"titulo": "Un título nuevo y atractivo", '
        '"contenido": "Primer párrafo...\\n\\nSegundo párrafo..."}'
    )
    return _with_system(plan, user)


def search_messages(plan: PromptPlan, payload: Mapping[str, str]) -> Messages:
    user = (
        f'Analiza esta búsqueda de noticias: "{payload["query"]}"\n'
        "Sé generoso con los términos de búsqueda y los conceptos relacionados. "
        "category y region deben ser un único valor o null."
    )
    return _with_system(plan, user)


def title_summary_messages(plan: PromptPlan, payload: Mapping[str, str]) -> Messages:
    user = (
        "Genera un título (máximo 100 caracteres) y un resumen (máximo 200 caracteres) "
        f"para el siguiente contenido:\n\n{payload['content']}"
    )
    return _with_system(plan, user)


def text_messages(prompt: str) -> Messages:
    return [{"role": "user", "content": prompt}]
