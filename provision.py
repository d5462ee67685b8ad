# provision.py -- Provisioning orchestrator.
# Builds the descriptor registry, schedules it into phase batches and runs
# each batch on a thread pool. A batch's barrier opens only after every unit
# in it resolved; dependents of a failed unit fail fast as blocked.

import concurrent.futures
import os
import threading
import time
from dataclasses import dataclass, field

import audit
import crypto
import placement
import registry
import user_secrets
from errors import ConfigurationError, ProvisionError, UnitTimeoutError
from hostconfig import HostConfig
from manifest import Manifest, load_manifest
from placement import Mode, Result, State
from scheduler import PhaseBarriers, PhaseBatch, schedule

RUNTIME_DIR_MODE = 0o755


@dataclass
class Report:
    """Outcomes of one provisioning run, one Result per unit or entry."""
    results: list[Result] = field(default_factory=list)

    def failures(self) -> list[Result]:
        return [r for r in self.results if r.state == State.FAILED]

    def warnings(self) -> list[tuple[str, str]]:
        return [(r.name, w) for r in self.results for w in r.warnings]

    @property
    def exit_code(self) -> int:
        return 1 if self.failures() else 0


class Provisioner:
    """Central API for provisioning a host's secrets.

    Nothing is cached between runs: the registry and schedule are rebuilt
    from configuration on every call and the filesystem is the only record
    of what has been placed.

    Args:
        config: The host configuration.
        decryptor: Decrypt backend; built from config.decrypt_backend when None.
        listener: Optional callable(signal_name, phase) for barrier signals.
    """

    def __init__(self, config: HostConfig, decryptor=None, listener=None) -> None:
        self.config = config
        self.mode = Mode(
            dry_run=config.dry_run,
            sandbox=config.dry_run_path,
            runtime_root=config.runtime_root,
        )
        if decryptor is None:
            decryptor = crypto.make_decryptor(config.decrypt_backend, config.age_binary)
        self.decryptor = decryptor
        self.barriers = PhaseBarriers(listener)
        self.states: dict[str, State] = {}
        self._states_lock = threading.Lock()
        self._cancel = threading.Event()

    # -- Registry and schedule --

    def load_manifest(self) -> Manifest:
        if not self.config.auto_configure_from_manifest:
            return Manifest()
        return load_manifest(self.config.effective_manifest_path(), self.config.runtime_root)

    def build(self) -> registry.BuildResult:
        """Load the manifest, discover files and build validated descriptors.

        Raises:
            ConfigurationError: On any invalid input; nothing is decrypted.
        """
        manifest = self.load_manifest()
        if self.config.auto_discover:
            discovered = registry.discover(self.config.build_path)
        else:
            discovered = registry.Discovered()
        built = registry.build_descriptors(self.config, manifest, discovered)
        for name, kept, dropped in built.dropped:
            audit.log_event(
                self.config.audit_file, name, "schedule", None, "warning",
                f"{dropped} entry replaced by {kept} entry",
            )
        return built

    def plan(self) -> list[PhaseBatch]:
        return schedule(self.build().descriptors)

    def _find(self, name: str) -> registry.SecretDescriptor:
        descriptor = self.build().get(name)
        if descriptor is None:
            raise ConfigurationError(f"No descriptor named '{name}'")
        return descriptor

    # -- Execution --

    def _set_state(self, name: str, state: State) -> None:
        with self._states_lock:
            self.states[name] = state

    def prepare_runtime_tree(self) -> None:
        """Create the runtime root and its roles/ and users/ subtrees."""
        root = self.config.runtime_root
        for path in (root, os.path.join(root, "roles"), os.path.join(root, "users")):
            effective = self.mode.effective(path)
            if not os.path.isdir(effective):
                os.makedirs(effective, RUNTIME_DIR_MODE, exist_ok=True)
                os.chmod(effective, RUNTIME_DIR_MODE)

    def _run_unit(self, descriptor, blocked_by: str | None) -> list[Result]:
        self._set_state(descriptor.name, State.DECRYPTING)
        if isinstance(descriptor, registry.UserSecretsDescriptor):
            results = user_secrets.expand_user_secrets(
                descriptor, self.mode, self.decryptor, self.config.audit_file,
                blocked_by=blocked_by, cancel=self._cancel,
            )
        else:
            results = [placement.place(
                descriptor, self.mode, self.decryptor, self.config.audit_file,
                blocked_by=blocked_by, cancel=self._cancel,
            )]
        failed = any(r.state == State.FAILED and r.name == descriptor.name for r in results)
        self._set_state(descriptor.name, State.FAILED if failed else State.PLACED)
        return results

    def _run_batch(self, batch: PhaseBatch, failed: set[str]) -> list[Result]:
        timeout = self.config.unit_timeout
        results: list[Result] = []
        timed_out: list[concurrent.futures.Future] = []

        for d in batch.descriptors:
            self._set_state(d.name, State.PENDING)

        with concurrent.futures.ThreadPoolExecutor(max_workers=max(1, len(batch.descriptors))) as pool:
            started = time.monotonic()
            futures = [
                (d, pool.submit(self._run_unit, d, d.identity_from if d.identity_from in failed else None))
                for d in batch.descriptors
            ]
            for d, future in futures:
                remaining = None if timeout is None else max(0.0, started + timeout - time.monotonic())
                try:
                    unit_results = future.result(timeout=remaining)
                except concurrent.futures.TimeoutError:
                    err = UnitTimeoutError(f"Unit exceeded {timeout:g}s")
                    target = self.mode.effective(d.target)
                    audit.log_event(self.config.audit_file, d.name, "place", target, "failed",
                                    f"{err.kind}: {err}")
                    unit_results = [Result(d.name, target, State.FAILED, err.kind, str(err))]
                    timed_out.append(future)
                except Exception as e:
                    # Reported like any other failure; siblings are unaffected.
                    target = self.mode.effective(d.target)
                    message = f"Unexpected error: {type(e).__name__}: {e}"
                    audit.log_event(self.config.audit_file, d.name, "place", target, "failed", message)
                    unit_results = [Result(d.name, target, State.FAILED, ProvisionError.kind, message)]
                if any(r.state == State.FAILED for r in unit_results if r.name == d.name):
                    failed.add(d.name)
                results.extend(unit_results)
        # The pool has joined every thread here. A unit that finished after
        # its timeout is reported failed, so anything it placed is removed.
        for future in timed_out:
            if future.exception() is not None:
                continue
            for r in future.result():
                if r.state == State.PLACED:
                    placement.remove_file(r.target)
        for d in batch.descriptors:
            if d.name in failed:
                self._set_state(d.name, State.FAILED)
        return results

    def run(self, phase: int | None = None) -> Report:
        """Provision every phase in order, or only the given phase.

        When a single phase runs, producers from earlier phases are taken
        from the filesystem: a missing identity blocks its dependents.

        Raises:
            ConfigurationError: On invalid configuration or unknown phase.
        """
        batches = self.plan()
        if phase is not None:
            selected = [b for b in batches if b.phase == phase]
            if not selected:
                raise ConfigurationError(f"No descriptors in phase {phase}")
        else:
            selected = batches
        last_phase = batches[-1].phase if batches else 1

        self._cancel.clear()
        self.prepare_runtime_tree()
        report = Report()
        failed: set[str] = set()
        for batch in selected:
            report.results.extend(self._run_batch(batch, failed))
            audit.log_event(
                self.config.audit_file, "system", "phase", None, "complete",
                f"phase {batch.phase}: {len(batch.descriptors)} units",
            )
            self.barriers.phase_complete(batch.phase, last_phase)
        if not batches:
            self.barriers.phase_complete(1, 1)
        return report

    def cancel(self) -> None:
        """Stop units that have not begun decrypting; running ones finish."""
        self._cancel.set()

    def place_unit(self, name: str) -> Report:
        """Run a single unit, as a supervisor starting one unit per descriptor would."""
        descriptor = self._find(name)
        return Report(self._run_unit(descriptor, None))

    def _remove(self, descriptor) -> list[Result]:
        if isinstance(descriptor, registry.UserSecretsDescriptor):
            results = user_secrets.remove_user_secrets(
                descriptor, self.mode, self.decryptor, self.config.audit_file,
            )
        else:
            results = [placement.remove(descriptor, self.mode, self.config.audit_file)]
        self._set_state(descriptor.name, State.REMOVED)
        return results

    def remove_unit(self, name: str) -> Report:
        return Report(self._remove(self._find(name)))

    def teardown(self) -> Report:
        """Remove every unit, latest phase first, so identities outlive their users."""
        report = Report()
        for batch in reversed(self.plan()):
            for d in batch.descriptors:
                report.results.extend(self._remove(d))
        return report

    def status(self) -> list[tuple[registry.SecretDescriptor, str, bool]]:
        """Return (descriptor, effective target, present) for every descriptor."""
        rows = []
        for batch in self.plan():
            for d in batch.descriptors:
                target = self.mode.effective(d.target)
                if isinstance(d, registry.UserSecretsDescriptor):
                    present = os.path.isdir(target)
                else:
                    present = os.path.isfile(target)
                rows.append((d, target, present))
        return rows
