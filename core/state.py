class RuntimeConfig:
    """
    Singleton holding UI-only runtime switches.
    Cluster parameters are never stored here; they travel as ClusterConfig.
    """
    # 0: results only, 1: per-resource lines, 2: diffs, 3: debug log on console
    VERBOSITY: int = 0

    @property
    def VERBOSE(self) -> bool:
        return self.VERBOSITY >= 1

config = RuntimeConfig()
