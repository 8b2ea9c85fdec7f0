"""
Compact BodyPix-style person segmentation network.

A MobileNetV1 backbone built for a configurable output stride and channel
multiplier, followed by a 1x1 segmentation head that emits one logit per
output cell. Once the running stride reaches the output stride, later
stride-2 layers switch to stride 1 and grow their dilation instead, so the
feature map keeps the requested resolution.
"""

from __future__ import annotations

from typing import List, Optional, Tuple

import torch
import torch.nn as nn


# (kind, stride, channels) for the 1.0x MobileNetV1 body
MOBILENET_V1_LAYERS: List[Tuple[str, int, int]] = [
    ("conv2d", 2, 32),
    ("separable", 1, 64),
    ("separable", 2, 128),
    ("separable", 1, 128),
    ("separable", 2, 256),
    ("separable", 1, 256),
    ("separable", 2, 512),
    ("separable", 1, 512),
    ("separable", 1, 512),
    ("separable", 1, 512),
    ("separable", 1, 512),
    ("separable", 1, 512),
    ("separable", 2, 1024),
    ("separable", 1, 1024),
]


def _make_divisible(v: float, divisor: int, min_value: Optional[int] = None) -> int:
    if min_value is None:
        min_value = divisor
    new_v = max(min_value, int(v + divisor / 2) // divisor * divisor)
    if new_v < 0.9 * v:
        new_v += divisor
    return new_v


def strided_layout(output_stride: int) -> List[Tuple[str, int, int, int]]:
    """Return (kind, stride, dilation, channels) per layer for `output_stride`."""
    layout = []
    current_stride = 1
    rate = 1
    for kind, stride, channels in MOBILENET_V1_LAYERS:
        if current_stride == output_stride:
            layer_stride = 1
            layer_rate = rate
            rate *= stride
        else:
            layer_stride = stride
            layer_rate = 1
            current_stride *= stride
        layout.append((kind, layer_stride, layer_rate, channels))
    return layout


def conv_bn(inp: int, oup: int, stride: int) -> nn.Sequential:
    return nn.Sequential(
        nn.Conv2d(inp, oup, 3, stride, 1, bias=False),
        nn.BatchNorm2d(oup),
        nn.ReLU6(inplace=True),
    )


def separable_conv_bn(inp: int, oup: int, stride: int, dilation: int = 1) -> nn.Sequential:
    return nn.Sequential(
        nn.Conv2d(inp, inp, 3, stride, dilation, dilation=dilation, groups=inp, bias=False),
        nn.BatchNorm2d(inp),
        nn.ReLU6(inplace=True),
        nn.Conv2d(inp, oup, 1, 1, 0, bias=False),
        nn.BatchNorm2d(oup),
        nn.ReLU6(inplace=True),
    )


class BodyPixNet(nn.Module):
    """MobileNetV1 body + person segmentation head."""

    def __init__(self, in_channels: int = 3, multiplier: float = 0.75, output_stride: int = 16):
        super().__init__()
        if output_stride not in (8, 16, 32):
            raise ValueError(f"Unsupported output stride: {output_stride}")
        self.in_channels = in_channels
        self.multiplier = multiplier
        self.output_stride = output_stride

        layers: List[nn.Module] = []
        inp = in_channels
        for kind, stride, dilation, channels in strided_layout(output_stride):
            oup = _make_divisible(channels * multiplier, 8)
            if kind == "conv2d":
                layers.append(conv_bn(inp, oup, stride))
            else:
                layers.append(separable_conv_bn(inp, oup, stride, dilation))
            inp = oup
        self.features = nn.Sequential(*layers)
        self.last_channel = inp
        self.segmentation_head = nn.Conv2d(self.last_channel, 1, 1, 1, 0, bias=True)

        self._init_weights()

    def forward(self, x: torch.Tensor) -> torch.Tensor:
        """Return segmentation logits shaped (B, 1, h, w)."""
        return self.segmentation_head(self.features(x))

    def _init_weights(self) -> None:
        for m in self.modules():
            if isinstance(m, nn.Conv2d):
                nn.init.kaiming_uniform_(m.weight, a=0, mode="fan_in", nonlinearity="relu")
                if m.bias is not None:
                    nn.init.constant_(m.bias, 0)
            elif isinstance(m, nn.BatchNorm2d):
                nn.init.constant_(m.weight, 1)
                nn.init.constant_(m.bias, 0)
