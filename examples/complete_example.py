"""
Complete GeoLift Example
========================

Demonstrates the full workflow on a synthetic panel:
- Market selection: which markets to test, for how long, at what MDE
- Test analysis: counterfactual, lift and placebo inference after the test

Run: python examples/complete_example.py
"""

import logging
import numpy as np
import sys
import os

# Add src to path
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..', 'src'))

from geolift import (
    EstimatorConfig, GeoLiftRunner, Panel, SimulationConfig, TreatmentSpec,
    create_synthetic_geo_data
)


def example_1_market_selection():
    """
    Example 1: Pre-Test Market Selection

    Before running a geo test, determine:
    - Which markets to treat
    - How long the test should run
    - What effect size you can detect
    """
    print("\n" + "=" * 70)
    print("EXAMPLE 1: MARKET SELECTION")
    print("=" * 70)

    data = create_synthetic_geo_data(n_geos=20, n_periods=60, random_state=42)
    panel = Panel.from_frame(data)
    print(f"\nHistorical data: {panel.n_locations} geos x {panel.n_periods} days")

    config = SimulationConfig(
        treatment_periods=(10, 15),
        N=(2, 3),
        effect_size=(0.0, 0.05, 0.1, 0.15, 0.2),
        lookback_window=3,
        cpic=2.0,
        budget=100000.0,
        holdout=(0.5, 1.0),
        max_combinations=20,
        estimator=EstimatorConfig(max_placebos=30)
    )

    runner = GeoLiftRunner()
    result = runner.select_markets(panel, config)

    print(f"\nSIMULATION:")
    print(f"  ├─ Windows simulated: {result.simulation.n_windows}")
    print(f"  ├─ Designs pruned: {result.simulation.n_pruned}")
    print(f"  ├─ Failed windows: {result.simulation.n_failed}")
    print(f"  └─ Runtime: {result.runtime_seconds:.1f}s")

    print(f"\nTOP 5 DESIGNS:")
    columns = ['rank', 'location', 'duration', 'EffectSize', 'Power',
               'AvgScaledL2Imbalance', 'Investment']
    print(result.ranking[columns].head(5).to_string(index=False))

    best = result.best
    if best is not None:
        curve = result.power_curves[
            (result.power_curves['location'] == best['location'])
            & (result.power_curves['duration'] == best['duration'])
        ]
        print(f"\nPOWER CURVE FOR {best['location']} ({best['duration']} days):")
        for _, row in curve.iterrows():
            print(f"  effect {row['EffectSize']:+.2f}: power {row['Power']:.2f}")

    return result


def example_2_test_analysis(selection=None):
    """
    Example 2: Post-Test Analysis with Known Ground Truth

    Injects a known lift into the selected markets to verify the estimate.
    """
    print("\n" + "=" * 70)
    print("EXAMPLE 2: TEST ANALYSIS")
    print("=" * 70)

    true_lift = 0.12
    treatment_start, treatment_end = 76, 90

    data = create_synthetic_geo_data(n_geos=30, n_periods=90, random_state=7)
    if selection is not None and selection.best is not None:
        treated = tuple(selection.best['location'].split(', '))
    else:
        treated = ('geo_003', 'geo_011')

    mask = data['location'].isin(treated) & (data['time'] >= treatment_start)
    data.loc[mask, 'Y'] *= (1 + true_lift)
    panel = Panel.from_frame(data)

    print(f"\nScenario: {true_lift:.0%} lift in {', '.join(treated)} "
          f"over days {treatment_start}-{treatment_end}")

    for model in ('none', 'best'):
        runner = GeoLiftRunner(EstimatorConfig(model=model, alpha=0.1), verbose=False)
        result = runner.run_test(panel, TreatmentSpec(treated, treatment_start, treatment_end))
        summary = result.to_dict()

        print(f"\nRESULTS (model={model}):")
        print(f"  ├─ Conclusion: {result.summary['conclusion']}")
        print(f"  ├─ Estimated Lift: {result.effect.percent_lift:.1%}")
        print(f"  ├─ Error: {abs(result.effect.percent_lift - true_lift) * 100:.1f}pp")
        print(f"  ├─ Lift 90% CI: [{summary['results']['lift_lower']:.1%}, "
              f"{summary['results']['lift_upper']:.1%}]")
        print(f"  ├─ P-value: {result.inference.p_value:.4f}")
        print(f"  ├─ Fitted Model: {summary['fit']['model']}")
        print(f"  └─ Scaled L2 Imbalance: {result.effect.scaled_l2_imbalance:.3f}")

    weights = sorted(summary['fit']['weights'].items(), key=lambda x: x[1], reverse=True)[:5]
    print(f"\nTOP DONOR WEIGHTS:")
    for donor, weight in weights:
        print(f"  {donor}: {weight:.3f}")

    gap = np.abs(result.effect.att[:treatment_start - 1]).mean()
    print(f"\nPre-period mean absolute gap: {gap:.2f}")


def main():
    """Run all examples."""
    logging.basicConfig(level=logging.INFO, format='%(levelname)s %(name)s: %(message)s')

    print("=" * 70)
    print("              GEOLIFT GEO EXPERIMENT FRAMEWORK")
    print("                     COMPLETE EXAMPLES")
    print("=" * 70)

    selection = example_1_market_selection()
    example_2_test_analysis(selection)

    print("\n" + "=" * 70)
    print("ALL EXAMPLES COMPLETE")
    print("=" * 70)


if __name__ == '__main__':
    main()
