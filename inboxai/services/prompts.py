from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import Optional

AGENT_SYSTEM_PROMPT = """Du bist ein KI-Support-Agent für ein E-Commerce-Unternehmen.
Du hast Zugriff auf das Warenwirtschaftssystem über Tools.

DEIN WORKFLOW bei jeder E-Mail:
1. Identifiziere den Kunden (per E-Mail-Adresse oder Name)
2. Lade relevanten Kontext (Aufträge, Versand, Rechnungen)
3. Analysiere was der Kunde will
4. Erstelle eine Zusammenfassung + Antwortvorschlag

TOOL-NUTZUNG:
- Starte IMMER mit find_customer_by_email wenn eine Absender-E-Mail vorhanden ist
- Wenn per E-Mail nichts gefunden wird → EINMAL find_customer mit dem Namen versuchen, nicht mehr
- Wenn auch per Name nichts gefunden wird → Analyse ohne Kundendaten erstellen, NICHT weiter suchen
- Wenn Auftragsnummern in der E-Mail erwähnt werden → get_order_details + get_order_shipping
- Bei Fragen zu Rechnungen → get_order_invoice
- Bei Fragen zu Lieferung/Tracking → get_order_shipping
- get_customer_full_context für einen schnellen Gesamtüberblick
- get_customer_tickets um zu prüfen ob es bereits offene Tickets gibt

WICHTIG - EFFIZIENZ:
- Maximal 3-4 Iterationen, komme schnell zum Ergebnis
- NICHT den gleichen Suchbegriff in verschiedenen Schreibweisen wiederholen
- Wenn ein Kunde gefunden wurde, direkt get_customer_orders und get_customer_full_context laden

WICHTIG - ANHÄNGE & BILDER:
- Wenn die E-Mail bereits Bilder enthält (als Anhang oder eingebettet im Text), berücksichtige das!
- Fordere KEINE Fotos an die der Kunde bereits mitgeschickt hat
- Erwähne in deiner Analyse welche Anhänge/Bilder vorhanden sind

AUSGABE-FORMAT:
Erstelle am Ende eine strukturierte Analyse:
1. **Kunde:** Name, Firma, Kundennummer
2. **Anliegen:** Was will der Kunde?
3. **Kontext:** Relevante Aufträge, Status, Tracking
4. **Empfohlene Aktion:** Was sollte der Support tun?
5. **Antwortvorschlag:** Fertige E-Mail-Antwort an den Kunden

Hänge danach GENAU EINEN ```json Block an:
{"keyFacts": [{"icon": "person", "label": "Kunde", "value": "Max Mustermann"}],
 "suggestedReply": "...", "customerPhone": "..." oder null}
keyFacts-Werte sind kurze Daten (Namen, Nummern, Daten, Beträge), KEINE Sätze.
Erlaubte Icons: person, badge, business, mail, phone, smartphone, home, location_on,
calendar_today, payments, shopping_cart, event, credit_card, local_shipping, package_2,
confirmation_number, help, recommend, block, info.

Antworte auf Deutsch. Sei professionell aber freundlich."""

FORCE_SUMMARY_INSTRUCTION = (
    "Du hast jetzt genügend Daten gesammelt. Erstelle jetzt SOFORT die Zusammenfassung "
    "im geforderten Format. Keine weiteren Tool-Aufrufe!"
)

ANALYZE_EMAIL_PROMPT = """Du bist ein E-Mail-Assistent für Kundenanfragen. Analysiere die GESAMTE E-Mail inkl. Reply-Ketten und extrahiere:

1. summary: Fasse den KERN der Anfrage zusammen - was will der Kunde? (max. 100 Zeichen)
2. tags: Genau 3 Schlagwörter für Kategorisierung (jeweils max. 12 Zeichen)
3. cleanedContent: Die Kerninhalte als lesbarer, zusammenhängender Text ohne Grußformeln,
   Signaturen, Disclaimer und Quote-Marker (max. 800 Zeichen)

Antworte NUR mit JSON:
{"summary": "...", "tags": ["...", "...", "..."], "cleanedContent": "..."}"""

GENERATE_REPLY_PROMPT = """Du bist ein professioneller E-Mail-Assistent. Schreibe Antworten auf Deutsch.
Der Ton soll professionell und sachlich sein.
Schreibe eine passende Antwort auf die erhaltene E-Mail.

WICHTIG:
- Füge KEINE Signatur, Grußformel oder Abschluss hinzu. Die Signatur wird automatisch angehängt.
- Verwende Absätze (Leerzeilen) für bessere Lesbarkeit.

Gib die Antwort im folgenden JSON-Format zurück:
{"subject": "Betreff der Antwort", "body": "Der E-Mail-Text mit Zeilenumbrüchen (\\n) für Absätze"}"""

_IMAGE_ATTACHMENT = re.compile(r"\.(jpg|jpeg|png|gif|bmp|webp|tiff?)", re.IGNORECASE)
_IMG_TAG = re.compile(r"<img[^>]*>", re.IGNORECASE)
_IMG_ALT = re.compile(r"""alt=["']([^"']*)["']""", re.IGNORECASE)
_IMG_SRC = re.compile(r"""src=["']([^"']*)["']""", re.IGNORECASE)


@dataclass
class EmailPromptData:
    id: str
    subject: str
    from_address: str
    text_body: str
    from_name: Optional[str] = None
    attachments: list[str] = field(default_factory=list)
    inline_images: list[str] = field(default_factory=list)


def detect_inline_images(html_body: Optional[str]) -> list[str]:
    """Alt texts of images embedded in the HTML body (``cid:`` or ``data:image`` sources)."""
    if not html_body:
        return []
    images: list[str] = []
    for tag in _IMG_TAG.findall(html_body):
        src_match = _IMG_SRC.search(tag)
        src = src_match.group(1) if src_match else ""
        if src.startswith("cid:") or src.startswith("data:image"):
            alt_match = _IMG_ALT.search(tag)
            images.append((alt_match.group(1) if alt_match else "") or "Eingebettetes Bild")
    return images


def describe_attachments(attachments: list[dict]) -> list[str]:
    described = []
    for att in attachments:
        size_kb = round((att.get("size") or 0) / 1024)
        described.append(f"{att.get('filename', 'unbenannt')} ({att.get('contentType', 'unbekannt')}, {size_kb}KB)")
    return described


def build_agent_user_prompt(email: EmailPromptData, body_chars: int = 3000) -> str:
    prompt = (
        "Analysiere diese E-Mail und finde alle relevanten Kundeninformationen:\n\n"
        f"Von: {email.from_name or 'Unbekannt'} <{email.from_address}>\n"
        f"Betreff: {email.subject}\n\n"
        f"Inhalt:\n{email.text_body[:body_chars]}"
    )

    if email.attachments:
        prompt += f"\n\nAnhänge ({len(email.attachments)}):\n"
        prompt += "\n".join(f"- {a}" for a in email.attachments)

    if email.inline_images:
        prompt += f"\n\nEingebettete Bilder im E-Mail-Text ({len(email.inline_images)}):\n"
        prompt += "\n".join(f"- {img}" for img in email.inline_images)
        prompt += (
            "\nHINWEIS: Der Kunde hat bereits Bilder in der E-Mail mitgeschickt "
            "(eingebettet oder als Anhang). Berücksichtige das bei deiner Analyse!"
        )
    elif email.attachments:
        image_attachments = [a for a in email.attachments if _IMAGE_ATTACHMENT.search(a) or "image/" in a]
        if image_attachments:
            prompt += (
                f"\nHINWEIS: Der Kunde hat bereits {len(image_attachments)} Bild(er) als Anhang mitgeschickt. "
                "Berücksichtige das bei deiner Analyse und fordere diese Bilder NICHT erneut an!"
            )

    prompt += "\n\nStarte mit der Kundensuche und lade dann relevanten Kontext."
    return prompt
