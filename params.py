from omegaconf import DictConfig

BASE_PARAMS = DictConfig({
    # All times in simulated milliseconds.
    "seed": None,  # Optional random seed for reproducibility.
    "nodes": 5,  # Cluster size, node ids are 1..nodes.
    "partitions": 5,  # Logical partitions, key k lives on partition k % partitions.
    "concurrency": 15,  # Client threads, ideally a multiple of "nodes".
    "time_limit": 30 * 1000,  # How long workers keep issuing operations.
    "stagger": 10,  # Mean pause before each operation, uniformly distributed.
    "procedure_call_timeout": 1000,  # How long to wait for a procedure call.
    "connection_response_timeout": 1000,  # How long to wait for a connection.
    # Time for a message to go from one node to another (or client to node).
    "one_way_latency_mean": 2,
    # Variance for one-way latency, which is lognormal distributed.
    "one_way_latency_variance": 2,
    "replication_interval": 5,  # How often replicas pull from partition masters.
    "rejoin_time": 500,  # How long a dead node takes to rejoin the cluster.
    # Hold local reads until earlier writes are replicated. False lets a master
    # serve writes nobody else has seen yet, which is what dirty-read looks for.
    "safe_reads": False,
    "workload": "dirty-read",  # "register" or "dirty-read".
    "strong_reads": False,  # Register reads through the replicated path.
    "no_reads": False,  # Register reader threads issue CAS instead of reads.
    "threads_per_key": 5,  # Register threads sharing one key.
    "key_time_limit": 10 * 1000,  # How long a group of threads works on one key.
    "key_delay": 100,  # Pause between one register thread's operations.
    "nemesis": None,  # None, "partition", "crash", or "isolated-killer".
    "nemesis_interval": 2000,  # Mean time between faults, exponentially distributed.
    "nemesis_duration": 1000,  # How long a fault lasts before healing.
    "recovery_time": 2000,  # Quiet period after final recovery.
    "store_dir": None,  # Optional directory for history, results and charts.
})
