"""Hierarchy orchestration: organizations, child authorities and their leaves.

The hierarchy is first planned as an in-memory tree of pending entities and
then walked depth-first with an explicit worklist. Every authority is issued
before its subordinates, so descendants always have a parsed signer.
"""

import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path

from opentelemetry import trace

from gmpki.ca.errors import GenerationError, PKIError
from gmpki.ca.issuer import issue
from gmpki.ca.keys import SM2PrivateKey, generate_key_pair
from gmpki.ca.models import GMCertificate
from gmpki.ca.persistence import write_certificate, write_private_key
from gmpki.ca.templates import EntityRole, build_template
from gmpki.ca.translator import to_gm_certificate
from gmpki.metrics import pki_metrics

logger = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)

KeyGenerator = Callable[[str], SM2PrivateKey]
Clock = Callable[[], datetime]


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class HierarchyOptions:
    """Shape of the hierarchy to generate."""

    org_count: int = 2
    child_org_count: int = 2
    server_count: int = 2
    client_count: int = 1
    nesting_depth: int = 1
    base_name: str = "Org"

    def __post_init__(self) -> None:
        for attribute in ("org_count", "child_org_count", "server_count", "client_count", "nesting_depth"):
            if getattr(self, attribute) < 0:
                raise ValueError(f"{attribute} must not be negative")
        if not self.base_name:
            raise ValueError("base_name must not be empty")


@dataclass
class PendingEntity:
    """A node of the planned hierarchy, not generated yet."""

    name: str
    role: EntityRole
    path: tuple[tuple[str, int], ...]
    children: list["PendingEntity"] = field(default_factory=list, repr=False)

    @property
    def location(self) -> str:
        """Index path for diagnostics, e.g. ``org=1 child=2 server=1``."""
        return " ".join(f"{label}={index}" for label, index in self.path)

    def descendants(self) -> list["PendingEntity"]:
        """Return all descendants in depth-first pre-order."""
        result = []
        stack = list(reversed(self.children))
        while stack:
            node = stack.pop()
            result.append(node)
            stack.extend(reversed(node.children))
        return result


@dataclass
class Authority:
    """An issued CA able to sign subordinates."""

    name: str
    key: SM2PrivateKey
    certificate: GMCertificate


@dataclass
class IssuedEntity:
    name: str
    role: EntityRole
    issuer_name: str
    key_path: Path
    cert_path: Path
    certificate: GMCertificate


@dataclass
class EntityFailure:
    name: str
    role: EntityRole
    location: str
    stage: str
    error: str


@dataclass
class GenerationReport:
    """Outcome of one generator run."""

    issued: list[IssuedEntity] = field(default_factory=list)
    failures: list[EntityFailure] = field(default_factory=list)

    @property
    def authorities(self) -> list[IssuedEntity]:
        return [entity for entity in self.issued if entity.role.is_authority]

    @property
    def leaves(self) -> list[IssuedEntity]:
        return [entity for entity in self.issued if not entity.role.is_authority]

    @property
    def ok(self) -> bool:
        return not self.failures

    def get(self, name: str) -> IssuedEntity | None:
        for entity in self.issued:
            if entity.name == name:
                return entity
        return None


def _add_subordinates(authority: PendingEntity, options: HierarchyOptions, depth: int) -> None:
    for j in range(1, options.server_count + 1):
        authority.children.append(
            PendingEntity(
                name=f"{authority.name}-server{j}",
                role=EntityRole.SERVER,
                path=authority.path + (("server", j),),
            )
        )
    for k in range(1, options.client_count + 1):
        authority.children.append(
            PendingEntity(
                name=f"{authority.name}-client{k}",
                role=EntityRole.CLIENT,
                path=authority.path + (("client", k),),
            )
        )
    if depth <= 0:
        return
    for m in range(1, options.child_org_count + 1):
        child = PendingEntity(
            name=f"{authority.name}-child{m}",
            role=EntityRole.INTERMEDIATE_CA,
            path=authority.path + (("child", m),),
        )
        _add_subordinates(child, options, depth - 1)
        authority.children.append(child)


def plan_hierarchy(options: HierarchyOptions) -> list[PendingEntity]:
    """Plan one root authority per organization with its subordinates.

    Each authority gets its servers, then its clients, then (while nesting
    depth remains) its child authorities, which repeat the same pattern.
    """
    roots = []
    for i in range(1, options.org_count + 1):
        root = PendingEntity(
            name=f"{options.base_name}{i}",
            role=EntityRole.ROOT_CA,
            path=(("org", i),),
        )
        _add_subordinates(root, options, options.nesting_depth)
        roots.append(root)
    return roots


class HierarchyGenerator:
    """Generates and persists every entity of a planned hierarchy.

    Failures are per entity: the error is logged, recorded in the report and
    generation moves on. Descendants of a failed authority are recorded as
    skipped since nothing can sign them.
    """

    def __init__(
        self,
        output_dir: Path,
        key_generator: KeyGenerator = generate_key_pair,
        clock: Clock = utcnow,
    ) -> None:
        self.output_dir = Path(output_dir)
        self.key_generator = key_generator
        self.clock = clock

    def generate(self, plan: list[PendingEntity]) -> GenerationReport:
        report = GenerationReport()
        worklist: list[tuple[PendingEntity, Authority | None]] = [
            (entity, None) for entity in reversed(plan)
        ]

        with tracer.start_as_current_span("HierarchyGenerator.generate") as span:
            while worklist:
                entity, signer = worklist.pop()
                try:
                    issued, key = self.generate_entity(entity, signer)
                except PKIError as e:
                    self._record_failure(report, entity, e)
                    continue
                except Exception as e:
                    logger.exception("entity_generation_crashed", extra={"entity": entity.name})
                    self._record_failure(report, entity, GenerationError(entity.name, str(e)))
                    continue

                report.issued.append(issued)
                if entity.children:
                    authority = Authority(name=entity.name, key=key, certificate=issued.certificate)
                    worklist.extend((child, authority) for child in reversed(entity.children))

            span.set_attribute("issued", len(report.issued))
            span.set_attribute("failed", len(report.failures))

        logger.info(
            "hierarchy_generated",
            extra={
                "output_dir": str(self.output_dir),
                "issued": len(report.issued),
                "failed": len(report.failures),
            },
        )
        return report

    def generate_entity(
        self,
        entity: PendingEntity,
        signer: Authority | None,
    ) -> tuple[IssuedEntity, SM2PrivateKey]:
        """Generate key and certificate for one entity and write both PEM files.

        Files are written only after signing succeeded, so a failing entity
        leaves nothing behind.

        Raises:
            PKIError: Any per-entity failure.
        """
        with tracer.start_as_current_span("HierarchyGenerator.generate_entity") as span:
            span.set_attribute("entity", entity.name)
            span.set_attribute("role", entity.role.value)

            key = self.key_generator(entity.name)
            template = to_gm_certificate(build_template(entity.name, entity.role, now=self.clock()))

            if signer is None:
                der, certificate = issue(entity.name, template, None, key.public_key, key)
                issuer_name = entity.name
            else:
                der, certificate = issue(
                    entity.name, template, signer.certificate, key.public_key, signer.key
                )
                issuer_name = signer.name

            key_file = write_private_key(entity.name, key, self.output_dir)
            try:
                cert_file = write_certificate(entity.name, der, self.output_dir)
            except Exception:
                self._remove(entity.name, key_file)
                raise

        pki_metrics.record_entity_generated(entity.role.value)
        logger.info(
            "entity_generated",
            extra={"entity": entity.name, "role": entity.role.value, "issuer": issuer_name},
        )
        return (
            IssuedEntity(
                name=entity.name,
                role=entity.role,
                issuer_name=issuer_name,
                key_path=key_file,
                cert_path=cert_file,
                certificate=certificate,
            ),
            key,
        )

    def _record_failure(self, report: GenerationReport, entity: PendingEntity, error: PKIError) -> None:
        stage = type(error).__name__
        logger.error(
            "entity_generation_failed",
            extra={
                "entity": entity.name,
                "role": entity.role.value,
                "location": entity.location,
                "stage": stage,
                "error": str(error),
            },
        )
        report.failures.append(
            EntityFailure(
                name=entity.name,
                role=entity.role,
                location=entity.location,
                stage=stage,
                error=str(error),
            )
        )

        for descendant in entity.descendants():
            pki_metrics.record_failure("skipped")
            logger.warning(
                "entity_skipped",
                extra={"entity": descendant.name, "location": descendant.location, "issuer": entity.name},
            )
            report.failures.append(
                EntityFailure(
                    name=descendant.name,
                    role=descendant.role,
                    location=descendant.location,
                    stage="skipped",
                    error=f"issuer {entity.name} was not generated",
                )
            )

    def _remove(self, name: str, path: Path) -> None:
        try:
            path.unlink(missing_ok=True)
        except OSError as e:
            logger.warning("pem_cleanup_failed", extra={"entity": name, "path": str(path), "error": str(e)})
