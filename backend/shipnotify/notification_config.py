"""Notification rule configuration loader.

Rules and templates are declared in YAML and seeded into the database at
startup; the rule evaluator only ever reads them back.
"""

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional, Union

import yaml

from .models import (
    NotificationChannel,
    NotificationRecipient,
    NotificationRule,
    NotificationTemplate,
    utcnow,
)

logger = logging.getLogger(__name__)

PROJECT_ROOT = Path(__file__).parent.parent.parent


class RuleConfigError(ValueError):
    """Raised when the rule configuration file is invalid."""


@dataclass
class TemplateConfig:
    name: str
    body: str
    subject: Optional[str] = None
    metadata: Optional[dict] = None


@dataclass
class RecipientConfig:
    channel: NotificationChannel
    target: str
    metadata: Optional[dict] = None


@dataclass
class RuleConfig:
    name: str
    trigger: str
    template: str
    filter: Optional[dict] = None
    description: Optional[str] = None
    enabled: bool = True
    recipients: list[RecipientConfig] = field(default_factory=list)


@dataclass
class RulesConfig:
    """Parsed notifications.yaml."""

    templates: dict[str, TemplateConfig] = field(default_factory=dict)
    rules: list[RuleConfig] = field(default_factory=list)


def resolve_config_path(config_path: Union[str, Path, None]) -> Path:
    """Resolve a relative path against the working directory, then the project root."""
    if config_path is None:
        return PROJECT_ROOT / "config" / "notifications.yaml"
    path = Path(config_path)
    if path.is_absolute() or path.exists():
        return path
    return PROJECT_ROOT / path


def parse_rules_config(data: dict) -> RulesConfig:
    """Validate raw YAML data.

    Raises:
        RuleConfigError: On unknown channels, missing fields or references
            to undefined templates
    """
    config = RulesConfig()

    for name, raw in (data.get("templates") or {}).items():
        if not isinstance(raw, dict) or not raw.get("body"):
            raise RuleConfigError(f"Template {name} must define a body")
        config.templates[name] = TemplateConfig(
            name=name,
            subject=raw.get("subject"),
            body=raw["body"],
            metadata=raw.get("metadata"),
        )

    for raw in data.get("rules") or []:
        name = raw.get("name")
        if not name or not raw.get("trigger"):
            raise RuleConfigError(f"Rule {raw!r} needs a name and a trigger")
        template = raw.get("template")
        if template not in config.templates:
            raise RuleConfigError(f"Rule {name} references unknown template {template}")

        recipients = []
        for recipient in raw.get("recipients") or []:
            try:
                channel = NotificationChannel(str(recipient.get("channel", "")).upper())
            except ValueError:
                raise RuleConfigError(
                    f"Rule {name} has unknown channel {recipient.get('channel')}"
                )
            if not recipient.get("target"):
                raise RuleConfigError(f"Rule {name} has a recipient without target")
            recipients.append(
                RecipientConfig(
                    channel=channel,
                    target=str(recipient["target"]),
                    metadata=recipient.get("metadata"),
                )
            )

        config.rules.append(
            RuleConfig(
                name=name,
                trigger=raw["trigger"],
                template=template,
                filter=raw.get("filter"),
                description=raw.get("description"),
                enabled=bool(raw.get("enabled", True)),
                recipients=recipients,
            )
        )

    return config


def load_rules_config(config_path: Union[str, Path, None] = None) -> RulesConfig:
    """Load rule configuration from YAML.

    A missing file yields an empty configuration.

    Raises:
        RuleConfigError: If the file exists but is invalid
    """
    path = resolve_config_path(config_path)
    if not path.exists():
        logger.info(f"Rules file not found at {path}, no rules loaded")
        return RulesConfig()

    try:
        with open(path) as f:
            data = yaml.safe_load(f) or {}
    except yaml.YAMLError as e:
        raise RuleConfigError(f"Invalid YAML in {path}: {e}") from e

    config = parse_rules_config(data)
    logger.info(
        f"Loaded {len(config.rules)} rules and {len(config.templates)} templates "
        f"from {path}"
    )
    return config


def seed_rules(session_factory, config: RulesConfig) -> int:
    """Upsert templates and rules by name.

    Recipients are matched on (channel, target) so existing recipient ids,
    and the notification dedupe keys derived from them, stay stable.

    Returns:
        Number of rules written
    """
    now = utcnow()
    db = session_factory()
    try:
        templates = {}
        for name, tc in config.templates.items():
            template = db.query(NotificationTemplate).filter_by(name=name).first()
            if template is None:
                template = NotificationTemplate(name=name, created_at=now)
                db.add(template)
            template.subject = tc.subject
            template.body = tc.body
            template.metadata_json = tc.metadata
            template.updated_at = now
            templates[name] = template
        db.flush()

        for rc in config.rules:
            rule = db.query(NotificationRule).filter_by(name=rc.name).first()
            if rule is None:
                rule = NotificationRule(name=rc.name, created_at=now)
                db.add(rule)
            rule.description = rc.description
            rule.trigger_event = rc.trigger
            rule.filter = rc.filter
            rule.template_id = templates[rc.template].id
            rule.enabled = rc.enabled
            rule.updated_at = now

            existing = {(r.channel, r.target): r for r in rule.recipients}
            keep = []
            for recipient in rc.recipients:
                key = (recipient.channel.value, recipient.target)
                row = existing.get(key)
                if row is None:
                    row = NotificationRecipient(
                        channel=recipient.channel.value,
                        target=recipient.target,
                        created_at=now,
                    )
                row.metadata_json = recipient.metadata
                keep.append(row)
            rule.recipients = keep

        db.commit()
    except Exception:
        db.rollback()
        raise
    finally:
        db.close()

    logger.info(f"Seeded {len(config.rules)} notification rules")
    return len(config.rules)
