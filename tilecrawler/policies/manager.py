# tilecrawler/policies/manager.py

from typing import Dict, List, Optional, Sequence

from ..exceptions import PolicyNotFoundError
from ..tile_math import Level
from .base import DownloaderOptions, TilePolicy
from .custom import CustomPolicy
from .msn import msn_presets
from .tianditu import tianditu_presets


class PolicyManager:
    """
    简单的 policy 注册 / 获取
    """

    _policies: Dict[str, TilePolicy] = {}

    @classmethod
    def register_policy(cls, policy: TilePolicy):
        """
        注册瓦片源策略

        Args:
            policy: 策略实例，按 name（不区分大小写）注册，同名覆盖
        """
        cls._policies[policy.name.lower()] = policy

    @classmethod
    def get_policy(cls, name: str) -> TilePolicy:
        """
        获取瓦片源策略

        Raises:
            PolicyNotFoundError: 未注册的策略
        """
        p = cls._policies.get(name.lower())
        if p is None:
            raise PolicyNotFoundError(f"未知瓦片源: {name}（可选: {', '.join(cls.list_policies())}）")
        return p

    @classmethod
    def list_policies(cls) -> List[str]:
        return list(cls._policies.keys())

    @classmethod
    def create_custom_policy(
        cls,
        name: str,
        url_template: str,
        levels: Sequence[Level],
        subdomains: Optional[List[str]] = None,
        options: Optional[DownloaderOptions] = None,
        tile_format: str = "png",
        require_png: bool = False,
    ) -> TilePolicy:
        """
        创建、注册并返回一个自定义策略
        """
        policy = CustomPolicy(
            name=name,
            url_template=url_template,
            levels=levels,
            subdomains=subdomains,
            options=options,
            tile_format=tile_format,
            require_png=require_png,
        )
        cls.register_policy(policy)
        return policy


# 注册内置 policy
for _policy in msn_presets() + tianditu_presets():
    PolicyManager.register_policy(_policy)
