"""
Heuristic filters run before any paid processing step.

Each concern is an ordered RuleSet so rules can be tested in isolation:
- SYSTEM_SENDER_RULES: bounces, no-reply robots, platform notifications
- forwarding_echo_rules(): our own forwards/replies coming back into the inbox
- SPAM_PATTERN_RULES: cold outreach (SEO, "grow your store", ...)
- ACKNOWLEDGMENT_RULES: "thanks", "ok, received" replies needing no answer
- AUTO_RESPONDER_RULES: out-of-office and other automatic replies
- FRUSTRATION_RULES: angry customers (hint for the Responder)

All predicates read an EmailFacts snapshot, never the database.
"""

import re
from dataclasses import dataclass
from typing import Iterable, Optional

from support_pipeline.heuristics.rules import (
    EmailFacts,
    Rule,
    RuleMatch,
    RuleSet,
    any_pattern,
    any_phrase,
)
from support_pipeline.heuristics.text import EMAIL_PATTERN, normalize_text


# === System senders ===

SYSTEM_LOCAL_PARTS = (
    "mailer-daemon",
    "mail-daemon",
    "maildaemon",
    "postmaster",
    "no-reply",
    "noreply",
    "no_reply",
    "do-not-reply",
    "donotreply",
    "do_not_reply",
    "bounce",
    "bounces",
    "auto-reply",
    "autoreply",
    "automated",
    "notification",
    "notifications",
    "alert",
    "alerts",
    "system",
    "daemon",
)

SYSTEM_SENDER_FRAGMENTS = (
    "mailer-daemon@",
    "postmaster@",
    "support@shopify",
    "@bounce.",
    "bounce-",
    "bounces+",
    "noreply-",
    "no-reply-",
)

DELIVERY_FAILURE_SUBJECTS = [
    re.compile(r"delivery status notification", re.IGNORECASE),
    re.compile(r"undeliver(able|ed)", re.IGNORECASE),
    re.compile(r"mail delivery (failed|failure|subsystem)", re.IGNORECASE),
    re.compile(r"returned mail", re.IGNORECASE),
    re.compile(r"failure notice", re.IGNORECASE),
    re.compile(r"message not delivered", re.IGNORECASE),
    re.compile(r"mensagem nao (entregue|pode ser entregue)", re.IGNORECASE),
    re.compile(r"falha na entrega", re.IGNORECASE),
]


def _system_local_part(facts: EmailFacts) -> bool:
    local = facts.sender_local
    return local in SYSTEM_LOCAL_PARTS or any(
        local.startswith(f"{part}-") or local.startswith(f"{part}.") or local.startswith(f"{part}+")
        for part in ("noreply", "no-reply", "bounce", "bounces", "mailer-daemon")
    )


def _system_fragment(facts: EmailFacts) -> bool:
    return any(fragment in facts.sender for fragment in SYSTEM_SENDER_FRAGMENTS)


SYSTEM_SENDER_RULES = RuleSet(
    "system_sender",
    [
        Rule("system_local_part", _system_local_part),
        Rule("system_sender_fragment", _system_fragment),
        Rule("delivery_failure_subject", any_pattern(DELIVERY_FAILURE_SUBJECTS, lambda f: f.norm_subject)),
    ],
)


_SENDER_SYNTAX = re.compile(rf"^{EMAIL_PATTERN.pattern}$")


def is_valid_sender(address: Optional[str]) -> bool:
    """Syntactic check of a sender address (one addr-spec, nothing else)."""
    if not address:
        return False
    return bool(_SENDER_SYNTAX.match(address.strip()))


# === Forwarding echo ===

def forwarding_echo_rules(own_addresses: Iterable[str], forward_prefix: str) -> RuleSet:
    """
    Rules rejecting mail the pipeline itself produced.

    Args:
        own_addresses: Shop mailbox and support addresses
        forward_prefix: Subject prefix of human-escalation forwards
    """
    owned = {a.strip().lower() for a in own_addresses if a}
    prefix = normalize_text(forward_prefix)

    return RuleSet(
        "forwarding_echo",
        [
            Rule("from_own_address", lambda f: f.sender in owned),
            Rule("forward_prefix_subject", lambda f: bool(prefix) and prefix in f.norm_subject),
        ],
    )


# === Pattern spam ===

STRONG_SPAM_PHRASES = (
    "seo services",
    "guest post",
    "backlinks",
    "increase your sales by",
    "boost your sales",
    "grow your store",
    "grow your business",
    "scale your store",
    "i can help you increase",
    "we can help you increase",
    "your store is not optimized",
    "i noticed your store",
    "i came across your store",
    "i visited your store",
    "is your store still active",
    "shopify expert",
    "shopify developer",
    "app development services",
    "web design services",
    "dropshipping agent",
    "marketing agency",
    "lead generation",
    "aumentar suas vendas",
    "aumente suas vendas",
    "vi sua loja",
    "encontrei sua loja",
    "sua loja nao esta otimizada",
    "servicos de seo",
    "agencia de marketing",
)

WEAK_SPAM_PHRASES = (
    "free audit",
    "free consultation",
    "schedule a call",
    "book a call",
    "quick call",
    "15 minutes",
    "conversion rate",
    "traffic",
    "google ranking",
    "first page of google",
    "partnership opportunity",
    "collaboration opportunity",
    "influencer",
    "revenue",
    "consultoria gratuita",
    "agendar uma chamada",
    "trafego",
    "parceria",
)

TEMPLATE_PLACEHOLDERS = [
    re.compile(r"\{\{\s*\w+\s*\}\}"),
    re.compile(r"\[(first ?name|name|store ?name|company)\]", re.IGNORECASE),
]


def _weak_spam_score(facts: EmailFacts) -> bool:
    text = facts.norm_text
    hits = sum(1 for phrase in WEAK_SPAM_PHRASES if phrase in text)
    return hits >= 3


SPAM_PATTERN_RULES = RuleSet(
    "pattern_spam",
    [
        Rule("strong_outreach_phrase", any_phrase(STRONG_SPAM_PHRASES, lambda f: f.norm_text)),
        Rule("unfilled_template", any_pattern(TEMPLATE_PLACEHOLDERS, lambda f: f"{f.subject}\n{f.body}")),
        Rule("weak_outreach_phrases", _weak_spam_score),
    ],
)


# === Acknowledgments ===

ACK_EXACT_PATTERNS = [
    re.compile(r"^(ok|okay|okey|obrigad[oa]s?|thanks?|thank you|thx|ty|gracias|grazie|merci|danke)\s*[!.]*$"),
    re.compile(r"^(entendido|perfeito|perfect|perfetto|perfecto|excelente|excellent|otimo|great|beleza|show)\s*[!.]*$"),
    re.compile(r"^(recebido|recebi|received|got it|recu|ricevuto|recibido)\s*[!.]*$"),
]

ACK_TOKENS = {
    "ok", "okay", "okey", "obrigado", "obrigada", "obrigados", "valeu", "thanks", "thank", "thx",
    "gracias", "grazie", "merci", "danke", "recebi", "recebido", "received", "perfeito", "perfect",
    "otimo", "great", "entendido", "combinado", "beleza", "show", "excelente", "excellent", "top",
    "agradeco", "grato", "grata", "got", "it", "you", "muito", "much", "so", "very", "tudo", "certo",
    "certinho", "ja", "chegou", "arrived", "ricevuto", "recu", "super", "maravilha", "de", "nada",
    "sim", "yes", "ah", "oi", "ola", "hi", "hello", "bom", "dia", "boa", "tarde", "noite", "a", "o",
    "e", "and", "um", "abraco", "att", "atenciosamente", "regards", "best", "cheers",
}

INTENT_TOKENS = {
    "nao", "not", "no", "ainda", "yet", "still", "onde", "where", "quando", "when", "problema",
    "problem", "cancelar", "cancel", "reembolso", "refund", "devolver", "devolucao", "return",
    "troca", "trocar", "exchange", "rastreio", "rastreamento", "tracking", "ajuda", "help",
    "porque", "why", "mas", "but", "porem", "errado", "wrong", "quebrado", "broken", "defeito",
    "pedido", "order", "pagamento", "payment", "preciso", "need", "quero", "want", "como", "how",
}

ACK_MAX_TOKENS = 8

_PUNCTUATION = re.compile(r"[^\w\s?]")


def _ack_exact(facts: EmailFacts) -> bool:
    for text in (facts.norm_body, facts.norm_subject if not facts.norm_body else ""):
        if text and any(p.match(text) for p in ACK_EXACT_PATTERNS):
            return True
    return False


def _short_thanks(facts: EmailFacts) -> bool:
    text = facts.norm_body or facts.norm_subject
    if not text or "?" in text:
        return False
    tokens = _PUNCTUATION.sub(" ", text).split()
    if not tokens or len(tokens) > ACK_MAX_TOKENS:
        return False
    if any(token in INTENT_TOKENS for token in tokens):
        return False
    if not all(token in ACK_TOKENS for token in tokens):
        return False
    return any(token not in {"a", "o", "e", "and", "de", "um", "oi", "ola", "hi", "hello", "sim", "yes", "ah"}
               for token in tokens)


ACKNOWLEDGMENT_RULES = RuleSet(
    "acknowledgment",
    [
        Rule("exact_acknowledgment", _ack_exact),
        Rule("short_thanks", _short_thanks),
    ],
)


# === Auto-responders ===

AUTO_SUBJECT_PATTERNS = [
    re.compile(r"^(out of (the )?office|automatic reply|auto(matic)?[- ]?reply|autoreply)", re.IGNORECASE),
    re.compile(r"^(resposta automatica|ausente|fora do escritorio|ausencia)", re.IGNORECASE),
    re.compile(r"^(respuesta automatica|fuera de la oficina)", re.IGNORECASE),
    re.compile(r"^(reponse automatique|absence du bureau)", re.IGNORECASE),
    re.compile(r"^(risposta automatica|fuori sede)", re.IGNORECASE),
    re.compile(r"^(abwesenheitsnotiz|automatische antwort)", re.IGNORECASE),
    re.compile(r"\b(on vacation|de ferias|em ferias|vacation reply)\b", re.IGNORECASE),
]

AUTO_BODY_PHRASES = (
    "i am out of the office",
    "i'm out of the office",
    "i am currently out of office",
    "i am currently away",
    "this is an automated response",
    "this is an automatic reply",
    "this mailbox is not monitored",
    "estou fora do escritorio",
    "estou ausente",
    "esta e uma resposta automatica",
    "esta e uma mensagem automatica",
    "mensagem automatica",
    "retornarei em",
    "responderei assim que possivel",
    "estoy fuera de la oficina",
    "je suis absent",
    "ich bin nicht im buro",
    "sono fuori ufficio",
)


def _auto_submitted_header(facts: EmailFacts) -> bool:
    value = facts.headers.get("auto-submitted", "").strip().lower()
    return bool(value) and value != "no"


def _autoreply_headers(facts: EmailFacts) -> bool:
    if "x-autoreply" in facts.headers or "x-autorespond" in facts.headers:
        return True
    if facts.headers.get("x-auto-response-suppress", "").strip().lower() == "all" and \
            facts.headers.get("precedence", "").strip().lower() in ("auto_reply", "bulk"):
        return True
    return facts.headers.get("precedence", "").strip().lower() == "auto_reply"


AUTO_RESPONDER_RULES = RuleSet(
    "auto_responder",
    [
        Rule("auto_submitted_header", _auto_submitted_header),
        Rule("autoreply_headers", _autoreply_headers),
        Rule("out_of_office_subject", any_pattern(AUTO_SUBJECT_PATTERNS, lambda f: f.norm_subject)),
        Rule("out_of_office_body", any_phrase(AUTO_BODY_PHRASES, lambda f: f.norm_body)),
    ],
)


# === Frustration ===

LEGAL_THREAT_PHRASES = (
    "procon",
    "reclame aqui",
    "reclameaqui",
    "advogado",
    "processo judicial",
    "juizado",
    "acao judicial",
    "consumidor.gov",
    "lawyer",
    "attorney",
    "legal action",
    "chargeback",
    "small claims",
    "consumer protection",
    "abogado",
    "avvocato",
)

SCAM_PHRASES = (
    "golpe",
    "golpista",
    "fraude",
    "estelionato",
    "ladrao",
    "ladroes",
    "roubo",
    "scam",
    "scammer",
    "fraud",
    "stolen my money",
)

REPEATED_CONTACT_PHRASES = (
    "terceira vez",
    "quarta vez",
    "de novo",
    "novamente",
    "ja mandei",
    "ja enviei",
    "ninguem responde",
    "ninguem me responde",
    "sem resposta",
    "ainda estou esperando",
    "third time",
    "again and again",
    "no one answers",
    "nobody answers",
    "still waiting",
    "no response",
)

ANGER_PHRASES = (
    "absurdo",
    "ridiculo",
    "palhacada",
    "inaceitavel",
    "vergonha",
    "pessimo",
    "horrivel",
    "descaso",
    "falta de respeito",
    "unacceptable",
    "ridiculous",
    "disgrace",
    "worst",
    "terrible",
    "horrible",
    "pathetic",
)


def _shouting(facts: EmailFacts) -> bool:
    letters = [ch for ch in facts.body if ch.isalpha()]
    if len(letters) >= 20:
        upper = sum(1 for ch in letters if ch.isupper())
        if upper / len(letters) > 0.7:
            return True
    return "!!!" in facts.body or "???" in facts.body


FRUSTRATION_RULES = RuleSet(
    "frustration",
    [
        Rule("legal_threat", any_phrase(LEGAL_THREAT_PHRASES, lambda f: f.norm_text)),
        Rule("scam_accusation", any_phrase(SCAM_PHRASES, lambda f: f.norm_text)),
        Rule("repeated_contact", any_phrase(REPEATED_CONTACT_PHRASES, lambda f: f.norm_text)),
        Rule("anger", any_phrase(ANGER_PHRASES, lambda f: f.norm_text)),
        Rule("shouting", _shouting),
    ],
)


@dataclass
class HeuristicFilters:
    """
    Bundle of rule sets used by the message processor.

    Rule sets are injectable so a deployment can extend them without
    touching the pipeline.
    """

    system_sender: RuleSet = SYSTEM_SENDER_RULES
    pattern_spam: RuleSet = SPAM_PATTERN_RULES
    acknowledgment: RuleSet = ACKNOWLEDGMENT_RULES
    auto_responder: RuleSet = AUTO_RESPONDER_RULES
    frustration: RuleSet = FRUSTRATION_RULES

    def check_system_sender(self, facts: EmailFacts) -> Optional[RuleMatch]:
        return self.system_sender.first_match(facts)

    def check_forwarding_echo(
        self, facts: EmailFacts, own_addresses: Iterable[str], forward_prefix: str
    ) -> Optional[RuleMatch]:
        return forwarding_echo_rules(own_addresses, forward_prefix).first_match(facts)

    def check_pattern_spam(self, facts: EmailFacts) -> Optional[RuleMatch]:
        return self.pattern_spam.first_match(facts)

    def check_no_reply_needed(self, facts: EmailFacts) -> Optional[RuleMatch]:
        """Acknowledgment or auto-responder, whichever matches first."""
        return self.acknowledgment.first_match(facts) or self.auto_responder.first_match(facts)

    def check_frustration(self, facts: EmailFacts) -> Optional[RuleMatch]:
        return self.frustration.first_match(facts)
