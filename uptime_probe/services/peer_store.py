"""本地节点存储模块

以本地 id 为键保存节点记录，持久化到 JSON 文件，
使代理重启或后端不可用时仍能立即恢复对已知节点的监控。
"""

import json
import os
import threading
from contextlib import contextmanager
from dataclasses import replace
from datetime import datetime, timedelta
from pathlib import Path
from typing import Dict, List, Optional, Any

from ..models.peer import Peer
from ..utils.exceptions import StoreError, ErrorCode
from ..utils.log_manager import get_logger

STORE_FORMAT_VERSION = 1


class LocalPeerStore:
    """本地节点存储

    所有读写都在内部锁内完成，对外只返回记录副本。
    """

    def __init__(self, persistence_file: Optional[str] = None):
        """
        初始化节点存储

        Args:
            persistence_file: 持久化文件路径，为None时只保存在内存中
        """
        self.persistence_file = persistence_file
        self._peers: Dict[int, Peer] = {}
        self._next_local_id = 1
        self._lock = threading.RLock()
        self._batch_depth = 0
        self._dirty = False
        self.logger = get_logger('peer_store')

    def load(self) -> int:
        """
        从持久化文件加载节点

        Returns:
            int: 加载的节点数量

        Raises:
            StoreError: 文件存在但无法读取或解析
        """
        if not self.persistence_file or not os.path.exists(self.persistence_file):
            return 0

        try:
            with open(self.persistence_file, 'r', encoding='utf-8') as f:
                data = json.load(f)

            peers = [Peer.from_dict(item) for item in data.get('peers', [])]
            next_local_id = int(data.get('next_local_id', 1))
        except (OSError, ValueError, TypeError, KeyError) as e:
            raise StoreError(
                f"加载节点缓存失败: {e}",
                error_code=ErrorCode.STORE_LOAD_ERROR,
                path=self.persistence_file, cause=e, recoverable=False
            )

        with self._lock:
            self._peers = {peer.local_id: peer for peer in peers}
            highest = max(self._peers.keys(), default=0)
            # 本地 id 永不复用
            self._next_local_id = max(next_local_id, highest + 1)

        active = sum(1 for p in peers if p.active)
        self.logger.info(
            f"从 {self.persistence_file} 加载了 {len(peers)} 个节点（活跃 {active} 个）")
        return len(peers)

    @contextmanager
    def batch(self):
        """在一个批次内完成多次修改，结束时统一持久化"""
        with self._lock:
            self._batch_depth += 1
            try:
                yield self
            finally:
                self._batch_depth -= 1
                if self._batch_depth == 0 and self._dirty:
                    self._save()

    def upsert(self, peer: Peer) -> Peer:
        """
        插入或更新节点

        Args:
            peer: 节点记录，local_id 为None时分配新的本地 id

        Returns:
            Peer: 保存后的记录副本

        Raises:
            StoreError: 与另一个活跃节点的 backend_id 冲突
        """
        with self._lock:
            if peer.active:
                for other in self._peers.values():
                    if (other.active and other.backend_id == peer.backend_id
                            and other.local_id != peer.local_id):
                        raise StoreError(
                            f"backend_id {peer.backend_id} 已被活跃节点 {other.local_id} 使用",
                            error_code=ErrorCode.STORE_CONFLICT
                        )

            if peer.local_id is None:
                stored = replace(peer, local_id=self._next_local_id)
                self._next_local_id += 1
            else:
                stored = replace(peer)
                if stored.local_id >= self._next_local_id:
                    self._next_local_id = stored.local_id + 1

            self._peers[stored.local_id] = stored
            self._mark_dirty()
            return replace(stored)

    def get(self, local_id: int) -> Optional[Peer]:
        with self._lock:
            peer = self._peers.get(local_id)
            return replace(peer) if peer else None

    def list_active(self) -> List[Peer]:
        """
        获取所有活跃节点

        Returns:
            List[Peer]: 按本地 id 排序的活跃节点副本
        """
        with self._lock:
            return [replace(p) for _, p in sorted(self._peers.items()) if p.active]

    def list_all(self) -> List[Peer]:
        with self._lock:
            return [replace(p) for _, p in sorted(self._peers.items())]

    def find_by_backend_id(self, backend_id: int) -> Optional[Peer]:
        """
        按后端 id 查找节点，活跃记录优先

        Args:
            backend_id: 后端分配的节点 id

        Returns:
            Optional[Peer]: 节点副本，不存在时返回None
        """
        with self._lock:
            candidates = [p for p in self._peers.values() if p.backend_id == backend_id]
            if not candidates:
                return None
            candidates.sort(key=lambda p: (not p.active, -p.local_id))
            return replace(candidates[0])

    def deactivate(self, local_id: int) -> bool:
        """
        将节点标记为非活跃，记录本身保留

        Args:
            local_id: 本地 id

        Returns:
            bool: 节点状态是否发生变化
        """
        with self._lock:
            peer = self._peers.get(local_id)
            if peer is None or not peer.active:
                return False

            self._peers[local_id] = replace(peer, active=False, deactivated_at=datetime.now())
            self._mark_dirty()
            return True

    def cleanup_inactive(self, keep_days: int = 30) -> int:
        """
        清理长期非活跃的节点记录

        Args:
            keep_days: 非活跃记录保留天数

        Returns:
            int: 清理的记录数量
        """
        cutoff_time = datetime.now() - timedelta(days=keep_days)
        with self._lock:
            expired = [
                local_id for local_id, peer in self._peers.items()
                if not peer.active and peer.deactivated_at and peer.deactivated_at < cutoff_time
            ]
            for local_id in expired:
                del self._peers[local_id]

            if expired:
                self._mark_dirty()
                self.logger.info(f"清理了 {len(expired)} 个超过 {keep_days} 天未活跃的节点")
            return len(expired)

    def get_stats(self) -> Dict[str, Any]:
        with self._lock:
            active = sum(1 for p in self._peers.values() if p.active)
            return {
                'total_peers': len(self._peers),
                'active_peers': active,
                'inactive_peers': len(self._peers) - active,
                'next_local_id': self._next_local_id,
                'persistence_file': self.persistence_file,
            }

    def _mark_dirty(self):
        self._dirty = True
        if self._batch_depth == 0:
            self._save()

    def _save(self):
        """原子地写入持久化文件，失败只记录日志，内存状态仍然有效"""
        self._dirty = False
        if not self.persistence_file:
            return

        try:
            Path(self.persistence_file).parent.mkdir(parents=True, exist_ok=True)

            data = {
                'format_version': STORE_FORMAT_VERSION,
                'next_local_id': self._next_local_id,
                'last_updated': datetime.now().isoformat(),
                'peers': [p.to_dict() for _, p in sorted(self._peers.items())],
            }

            tmp_path = f"{self.persistence_file}.tmp"
            with open(tmp_path, 'w', encoding='utf-8') as f:
                json.dump(data, f, ensure_ascii=False, indent=2)
            os.replace(tmp_path, self.persistence_file)

        except OSError as e:
            self.logger.error(f"保存节点缓存失败: {e}")
