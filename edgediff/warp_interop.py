import torch
import warp as wp


def warp_device(use_gpu: bool) -> str:
    if use_gpu:
        if not torch.cuda.is_available():
            raise ValueError("use_gpu is set but no CUDA device is available")
        return "cuda"
    return "cpu"


@torch.jit.ignore
def launch_kernel_from_torch(device, kernel, dim, inputs, block_dim=256):
    device = str(device)
    if dim == 0:
        return

    for input in inputs:
        if isinstance(input, torch.Tensor):
            if str(input.device) != device and not (
                input.device.type == "cuda" and device.startswith("cuda")
            ):
                raise ValueError(
                    f"Tensor on {input.device} passed to a launch on {device}"
                )

    if device.startswith("cuda"):
        torch_stream = torch.cuda.current_stream()
        wp_stream = wp.stream_from_torch(torch_stream)
        wp.launch(
            kernel,
            dim=dim,
            inputs=inputs,
            block_dim=block_dim,
            device=device,
            stream=wp_stream,
        )
    else:
        wp.launch(kernel, dim=dim, inputs=inputs, device=device)
