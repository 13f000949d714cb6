import argparse, logging, sys
import numpy as np
from .config import EngineConfig, load_config
from .cluster import run_local_job
from .errors import NMFError
from .jsonlog import log
from .loader import DataShardLoader
from .persistence import load_cached_coefficients, load_cached_dictionary
from .updates import nonnegative

logger = logging.getLogger("distributed_nmf")

# flag name -> (type, help); None type marks an on/off flag
_FLAGS = {
    # input and output
    "data_file": (str, "Input matrix (m x n, one row per line for text)."),
    "input_data_format": (str, 'Format of input and cache files, "text" or "binary".'),
    "is_partitioned": (None, "The input file is this client's column shard."),
    "output_path": (str, "Output directory."),
    "output_data_format": (str, 'Format of output matrix files, "text" or "binary".'),
    "maximum_running_time": (float, "Maximum running hours; <= 0 disables the limit."),
    "load_cache": (None, "Resume from B and S files in --cache-path."),
    "cache_path": (str, "Directory holding the B and S files to resume from."),
    # objective
    "m": (int, "Number of rows in the input matrix."),
    "n": (int, "Number of columns in the input matrix."),
    "dictionary_size": (int, "Size of dictionary; 0 means n."),
    # topology
    "num_clients": (int, "Total number of clients."),
    "num_worker_threads": (int, "Worker threads per client."),
    # optimization
    "num_epochs": (int, "Number of epochs."),
    "minibatch_size": (int, "Minibatch size for SGD."),
    "num_eval_minibatch": (int, "Evaluate the objective every this many minibatches."),
    "num_eval_samples": (int, "Columns sampled per evaluation."),
    "num_iter_S_per_minibatch": (int, "Gradient steps on each sampled S column."),
    "init_step_size_B": (float, "Step size for B is init * (offset + t)^(-pow)."),
    "step_size_offset_B": (float, "Offset of the B step-size schedule."),
    "step_size_pow_B": (float, "Power of the B step-size schedule."),
    "init_step_size_S": (float, "Step size for S is init * (offset + t)^(-pow)."),
    "step_size_offset_S": (float, "Offset of the S step-size schedule."),
    "step_size_pow_S": (float, "Power of the S step-size schedule."),
    "init_B_low": (float, "Lower bound of the random initial B."),
    "init_B_high": (float, "Upper bound of the random initial B."),
    "init_S_low": (float, "Lower bound of the random initial S."),
    "init_S_high": (float, "Upper bound of the random initial S."),
    "seed": (int, "Random seed; unset draws fresh entropy."),
    # tables
    "table_staleness": (int, "Staleness of the dictionary table."),
    "loss_table_staleness": (int, "Staleness of the loss table."),
}


def _add_engine_flags(ap):
    ap.add_argument("--config", help="YAML file of settings; flags override it")
    for name, (typ, help_) in _FLAGS.items():
        flag = "--" + name.replace("_", "-")
        if typ is None:
            ap.add_argument(flag, dest=name, action=argparse.BooleanOptionalAction, default=None, help=help_)
        else:
            ap.add_argument(flag, dest=name, type=typ, default=None, help=help_)


def _build_config(args) -> EngineConfig:
    raw = load_config(args.config)
    raw.update({k: v for k, v in vars(args).items() if k in _FLAGS and v is not None})
    return EngineConfig.from_mapping(raw)


def cmd_train(args):
    cfg = _build_config(args)
    log("train_start", m=cfg.m, n=cfg.n, dictionary_size=cfg.effective_dictionary_size,
        num_clients=cfg.num_clients, num_worker_threads=cfg.num_worker_threads)
    logger.info("minibatch: %d, S step: %g, B step: %g, S iter: %d", cfg.minibatch_size,
                cfg.init_step_size_S, cfg.init_step_size_B, cfg.num_iter_S_per_minibatch)
    result = run_local_job(cfg)
    early = sum(r.terminated_early for r in result.reports)
    log("train_done", out=cfg.output_path or ".", workers=len(result.reports), terminated_early=early)
    return 0


def cmd_plan(args):
    cfg = _build_config(args)
    for c in range(cfg.num_clients):
        cc = cfg.for_client(c)
        print(f"client {c}: {cc.client_n} columns, {cc.minibatches_per_epoch} minibatches/epoch per thread")
    print(f"evaluation slots per client: {cfg.num_eval_per_client}")
    return 0


def cmd_evaluate(args):
    cfg = _build_config(args)
    k = cfg.effective_dictionary_size
    B = nonnegative(load_cached_dictionary(args.results, cfg.output_data_format, k, cfg.m)).T
    total, count = 0.0, 0
    for c in range(cfg.num_clients):
        cc = cfg.for_client(c)
        if cc.is_partitioned:
            X = DataShardLoader(cc.client_data_file, cc.input_data_format, cc.m, cc.client_n)
        else:
            X = DataShardLoader(cc.data_file, cc.input_data_format, cc.m, cc.n, c, cc.num_clients)
        S = load_cached_coefficients(args.results, cfg.output_data_format, c, cc.client_n, k)
        R = X.as_matrix() - B @ S.T
        total += float(np.sum(R.astype(np.float64) ** 2)); count += cc.client_n
    loss = total / count
    print(f"mean squared reconstruction error: {loss:.9g}")
    log("evaluate_done", results=args.results, loss=loss)
    return 0


def main(argv=None):
    ap = argparse.ArgumentParser("distributed-nmf")
    ap.add_argument("--log-level", default="INFO", choices=["DEBUG", "INFO", "WARNING", "ERROR"])
    sub = ap.add_subparsers(dest="cmd", required=True)

    ap_tr = sub.add_parser("train", help="Train B and S with all clients in this process")
    _add_engine_flags(ap_tr)
    ap_tr.set_defaults(func=cmd_train)

    ap_pl = sub.add_parser("plan", help="Show column shards and evaluation slots")
    _add_engine_flags(ap_pl)
    ap_pl.set_defaults(func=cmd_plan)

    ap_ev = sub.add_parser("evaluate", help="Full reconstruction error of saved results")
    _add_engine_flags(ap_ev)
    ap_ev.add_argument("--results", required=True, help="Output directory of a run")
    ap_ev.set_defaults(func=cmd_evaluate)

    args = ap.parse_args(argv)
    logging.basicConfig(level=getattr(logging, args.log_level),
                        format="%(asctime)s %(levelname)s %(name)s: %(message)s")
    try:
        return args.func(args)
    except NMFError as e:
        logger.error("%s", e)
        log("failed", cmd=args.cmd, error=str(e), kind=type(e).__name__)
        return 1

if __name__ == "__main__":
    sys.exit(main())
