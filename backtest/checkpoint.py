from pathlib import Path
import pickle
import logging
import re
from typing import Dict, Optional

from models import ModelSpec, VarEstimate


class CheckpointManager:
    """Persists completed rolling steps so a truncated run can resume.

    Files are keyed by model, level, range and a fingerprint of the inputs
    and engine settings; a run on other data never sees them.
    """

    def __init__(self, checkpoint_dir: Path):
        self.checkpoint_dir = Path(checkpoint_dir)
        self.checkpoint_dir.mkdir(parents=True, exist_ok=True)
        self.logger = logging.getLogger('backtest.checkpoint')

    def _checkpoint_file(self, spec: ModelSpec, level: float, start: int, finish: int,
                         fingerprint: str) -> Path:
        slug = re.sub(r'[^A-Za-z0-9]+', '_', spec.label).strip('_')
        name = f"checkpoint_{slug}_L{level:g}_{start}_{finish}"
        if fingerprint:
            name += f"_{fingerprint}"
        return self.checkpoint_dir / f"{name}.pkl"

    def save_checkpoint(self, spec: ModelSpec, level: float, start: int, finish: int,
                        estimates: Dict[int, VarEstimate], fingerprint: str = ''):
        """Save completed estimates keyed by series position"""
        checkpoint_file = self._checkpoint_file(spec, level, start, finish, fingerprint)
        tmp_file = checkpoint_file.with_suffix('.tmp')
        with open(tmp_file, 'wb') as f:
            pickle.dump({'fingerprint': fingerprint, 'estimates': dict(estimates)}, f)
        tmp_file.replace(checkpoint_file)

    def load_checkpoint(self, spec: ModelSpec, level: float, start: int, finish: int,
                        fingerprint: str = '') -> Optional[Dict[int, VarEstimate]]:
        """Load checkpoint if one exists for exactly these inputs"""
        checkpoint_file = self._checkpoint_file(spec, level, start, finish, fingerprint)
        if not checkpoint_file.exists():
            return None

        with open(checkpoint_file, 'rb') as f:
            saved = pickle.load(f)
        if saved.get('fingerprint') != fingerprint:
            self.logger.warning(f"Ignoring {checkpoint_file.name}: written for other inputs")
            return None

        estimates = saved['estimates']
        self.logger.info(f"Restored {len(estimates)} steps from {checkpoint_file.name}")
        return estimates

    def clear_checkpoint(self, spec: ModelSpec, level: float, start: int, finish: int,
                         fingerprint: str = ''):
        checkpoint_file = self._checkpoint_file(spec, level, start, finish, fingerprint)
        if checkpoint_file.exists():
            checkpoint_file.unlink()
