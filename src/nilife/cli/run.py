# emacs: -*- mode: python; py-indent-offset: 4; indent-tabs-mode: nil -*-
# vi: set ft=python sts=4 ts=4 sw=4 et:
#
# Copyright The NiPreps Developers <nipreps@gmail.com>
#
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.
# You may obtain a copy of the License at
#
#     http://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
# See the License for the specific language governing permissions and
# limitations under the License.
#
# We support and encourage derived works from this project, please read
# about our expectations at
#
#     https://www.nipreps.org/community/licensing/
#
"""NiLiFE runner."""

import json
from pathlib import Path

import attrs

from nilife.analysis.virtual_lesion import evaluate_tracts
from nilife.cli.parser import build_parser
from nilife.data import load, load_classification, load_connectome
from nilife.data.base import volume_to_nifti
from nilife.data.dmri import DWI
from nilife.model.forward import build_forward_model
from nilife.model.life import reduce_model
from nilife.model.solver import SolverConfig

INPUT_EXTS = (".nii.gz", ".nii", ".h5")


def _output_stem(input_file: Path) -> str:
    name = input_file.name
    for ext in INPUT_EXTS:
        if name.endswith(ext):
            return name[: -len(ext)]
    return input_file.stem


def main(argv=None) -> None:
    """
    Entry point.

    Returns
    -------
    None

    """
    parser = build_parser()
    args = parser.parse_args(argv)

    extra_kwargs = {}

    if args.gradient_file:
        nfiles = len(args.gradient_file)

        if nfiles == 1:
            extra_kwargs["gradients_file"] = args.gradient_file[0]
        elif nfiles == 2:
            extra_kwargs["bvec_file"] = args.gradient_file[0]
            extra_kwargs["bval_file"] = args.gradient_file[1]
        else:
            parser.error("--gradient-file must be one or two files")

    if args.b0_file:
        extra_kwargs["b0_file"] = args.b0_file

    # Open the data with the given file path
    dataset: DWI = load(
        args.input_file,
        brainmask_file=args.brainmask if args.brainmask else None,
        **extra_kwargs,
    )
    # Only .tck tractograms lack a reference grid; others must match the DWI grid
    reference = dataset.grid if Path(args.tractogram).suffix == ".tck" else None
    connectome = load_connectome(args.tractogram, reference=reference)
    classification = load_classification(args.classification) if args.classification else {}

    config = args.solver_config or SolverConfig()
    if args.n_jobs is not None:
        config = attrs.evolve(config, n_jobs=max(1, args.n_jobs))

    print(f"Building the forward model of {len(connectome)} fascicles.")
    forward = build_forward_model(
        connectome,
        dataset,
        evals=args.evals,
        n_jobs=args.n_jobs,
        chunk_size=args.chunk_size,
        progress=args.progress,
    )

    print(
        f"Fitting {forward.n_fascicles} weights to {forward.n_voxels} voxels "
        f"x {forward.n_directions} directions."
    )
    fitted = forward.fit(dataset, config=config, normalize=args.normalize, progress=args.progress)
    print(
        f"Solver finished after {fitted.fit.n_iter} iterations "
        f"({'converged' if fitted.converged else 'not converged'}): {fitted.fit.message}"
    )

    reduced = reduce_model(fitted, threshold=args.threshold)
    print(f"Kept {reduced.forward.n_fascicles} of {reduced.n_original} fascicles.")

    output_dir = Path(args.output_dir)
    output_dir.mkdir(parents=True, exist_ok=True)
    output_prefix: Path = output_dir / _output_stem(Path(args.input_file))

    reduced.connectome.to_filename(f"{output_prefix}_connectome.h5")
    if args.write_trk:
        reduced.connectome.to_tractogram(f"{output_prefix}_connectome.trk")

    summary = fitted.summary() | {
        "n_kept": reduced.forward.n_fascicles,
        "kept_indices": reduced.kept_indices.tolist(),
        "threshold": args.threshold,
        "solver": attrs.asdict(config),
    }
    Path(f"{output_prefix}_fit.json").write_text(json.dumps(summary, indent=2))

    if args.write_rmse:
        volume_to_nifti(fitted.rmse_map(), dataset.grid, f"{output_prefix}_rmse.nii.gz")

    if classification:
        print(f"Evaluating the virtual lesion of {len(classification)} tracts.")
        results = evaluate_tracts(
            reduced,
            classification,
            n_jobs=args.n_jobs,
            progress=args.progress,
            index_space=args.index_space,
            nbins=args.nbins,
            nboot=args.nboot,
            nmontecarlo=args.nmontecarlo,
            seed=args.seed,
        )
        results.to_json(f"{output_prefix}_lesions.json")
        for name, result in results.items():
            evidence = (
                f"S = {result.statistics.strength_of_evidence:.3g}"
                if result.statistics is not None
                else result.status
            )
            print(f"  {name}: {evidence}")


if __name__ == "__main__":
    main()
