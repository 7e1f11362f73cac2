import time
import numpy as np
import torch
import cv2

# Try to import ComfyUI modules
try:
    import comfy.utils
    import comfy.model_management
    COMFY_AVAILABLE = True
except ImportError:
    COMFY_AVAILABLE = False
    print("ComfyUI modules not available. Running in standalone mode.")

try:
    from .chroma_key_remover import ChromaKeyProcessor, ChromaKeyError, DEFAULT_TOLERANCE
except ImportError:
    from chroma_key_remover import ChromaKeyProcessor, ChromaKeyError, DEFAULT_TOLERANCE


def _tensor_to_uint8(img_tensor):
    """Convert one ComfyUI image tensor (H, W, C) in 0-1 to uint8 numpy."""
    img_np = img_tensor.cpu().numpy()
    return np.clip(img_np * 255.0 + 0.5, 0, 255).astype(np.uint8)


def _progress_hooks(batch_size):
    """
    Return (progress bar, cancel check) for the running ComfyUI prompt,
    or (None, None) outside ComfyUI.
    """
    if not COMFY_AVAILABLE:
        return None, None
    pbar = comfy.utils.ProgressBar(batch_size * 100)
    return pbar, comfy.model_management.throw_exception_if_processing_interrupted


class ChromaKeyBackgroundRemover:
    """
    ComfyUI node that keys out a flat background color into transparency.
    """

    @classmethod
    def INPUT_TYPES(cls):
        return {
            "required": {
                "image": ("IMAGE",),
                "tolerance": ("INT", {
                    "default": DEFAULT_TOLERANCE,
                    "min": 0,
                    "max": 255,
                    "step": 1,
                    "display": "number",
                    "tooltip": "Color distance below which pixels become transparent (0-255). "
                               "Pixels up to twice this distance fade out smoothly."
                }),
                "background_color": ("STRING", {
                    "default": "auto",
                    "multiline": False,
                    "tooltip": "'auto' to detect from the image border, or an explicit color "
                               "such as #00ff00 or rgb(0, 255, 0)"
                }),
            },
            "optional": {
                "output_format": (["RGBA", "RGB_WITH_MASK"], {
                    "default": "RGBA",
                    "tooltip": "Output format: RGBA with alpha channel or RGB with separate mask"
                }),
            }
        }

    RETURN_TYPES = ("IMAGE", "MASK", "STRING")
    RETURN_NAMES = ("image", "mask", "background_color")
    FUNCTION = "remove_background"
    CATEGORY = "image/processing"

    def remove_background(self, image, tolerance=DEFAULT_TOLERANCE, background_color="auto",
                          output_format="RGBA"):
        """
        Main processing function for background removal with error handling.
        """
        try:
            # Validate input
            if image is None or image.shape[0] == 0:
                raise ValueError("No input image provided")

            if len(image.shape) != 4:
                raise ValueError(f"Expected 4D tensor, got {len(image.shape)}D")

            return self._process_images(
                image=image,
                tolerance=tolerance,
                background_color=background_color,
                output_format=output_format,
            )

        except ChromaKeyError as e:
            raise RuntimeError(f"Chroma key failed: {str(e)}")
        except cv2.error as e:
            raise RuntimeError(f"OpenCV processing error: {str(e)}")
        except MemoryError:
            raise RuntimeError("Insufficient memory for processing. Try reducing batch size.")
        except Exception as e:
            # User interrupts must reach ComfyUI unchanged
            if COMFY_AVAILABLE and isinstance(e, comfy.model_management.InterruptProcessingException):
                raise
            raise RuntimeError(f"Background removal failed: {str(e)}")

    def _process_images(self, image, tolerance=DEFAULT_TOLERANCE, background_color="auto",
                        output_format="RGBA"):
        """
        Internal method for processing images without error handling wrapper.
        """
        batch_size = image.shape[0]
        processor = ChromaKeyProcessor(tolerance=tolerance, background_color=background_color)
        pbar, cancel_check = _progress_hooks(batch_size)

        results = []
        masks = []
        colors = []

        for i in range(batch_size):
            img_np = _tensor_to_uint8(image[i])

            def on_progress(percent, offset=i * 100):
                if pbar is not None:
                    pbar.update_absolute(offset + percent)

            rgba_result, background = processor.remove_background_array(
                img_np, on_progress=on_progress, cancel_check=cancel_check
            )

            # Alpha channel as mask (0=transparent, 255=opaque)
            masks.append(rgba_result[:, :, 3])
            colors.append(background.to_hex())

            if output_format == "RGBA":
                results.append(rgba_result)
            else:  # RGB_WITH_MASK
                results.append(rgba_result[:, :, :3])

        result_tensor = torch.from_numpy(np.array(results)).float() / 255.0
        mask_tensor = torch.from_numpy(np.array(masks)).float() / 255.0

        return (result_tensor, mask_tensor, ", ".join(colors))


class ChromaKeyBackgroundRemoverBatch:
    """
    Batch version that keeps going when single images fail and returns a
    processing report.
    """

    @classmethod
    def INPUT_TYPES(cls):
        return {
            "required": {
                "images": ("IMAGE",),
                "tolerance": ("INT", {
                    "default": DEFAULT_TOLERANCE,
                    "min": 0,
                    "max": 255,
                    "step": 1,
                    "display": "number",
                    "tooltip": "Color distance below which pixels become transparent (0-255)"
                }),
                "background_color": ("STRING", {
                    "default": "auto",
                    "multiline": False,
                    "tooltip": "'auto' to detect per image, or an explicit #RRGGBB / rgb() color"
                }),
            },
            "optional": {
                "progress_reporting": ("BOOLEAN", {
                    "default": True,
                    "tooltip": "Generate detailed processing report"
                }),
            }
        }

    RETURN_TYPES = ("IMAGE", "MASK", "STRING")
    RETURN_NAMES = ("images", "masks", "report")
    FUNCTION = "batch_remove_background"
    CATEGORY = "image/processing"

    def batch_remove_background(self, images, tolerance=DEFAULT_TOLERANCE, background_color="auto",
                                progress_reporting=True):
        """
        Batch process multiple images, recording failures in the report.
        """
        if images is None or images.shape[0] == 0:
            raise ValueError("No input images provided")

        if len(images.shape) != 4:
            raise ValueError(f"Expected 4D tensor (batch, height, width, channels), got {len(images.shape)}D")

        batch_size, height, width, channels = images.shape
        if channels not in [3, 4]:
            raise ValueError(f"Expected 3 or 4 channels (RGB or RGBA), got {channels}")

        # Invalid tolerance or color applies to the whole batch
        processor = ChromaKeyProcessor(tolerance=tolerance, background_color=background_color)
        pbar, cancel_check = _progress_hooks(batch_size)

        results = []
        masks = []
        reports = []
        processing_stats = {
            'total_images': batch_size,
            'successful': 0,
            'failed': 0,
            'avg_processing_time': 0.0,
            'background_colors': [],
        }
        total_processing_time = 0.0

        for i in range(batch_size):
            start_time = time.time()

            def on_progress(percent, offset=i * 100):
                if pbar is not None:
                    pbar.update_absolute(offset + percent)

            try:
                img_np = _tensor_to_uint8(images[i])
                rgba_result, background = processor.remove_background_array(
                    img_np, on_progress=on_progress, cancel_check=cancel_check
                )

                masks.append(rgba_result[:, :, 3])
                results.append(rgba_result)
                processing_stats['successful'] += 1
                processing_stats['background_colors'].append(background.to_hex())

                processing_time = time.time() - start_time
                total_processing_time += processing_time

                if progress_reporting:
                    reports.append(
                        f"Image {i+1}: Processed successfully "
                        f"(background {background.to_hex()}) in {processing_time:.3f}s"
                    )

            except (ChromaKeyError, cv2.error, ValueError) as e:
                print(f"Error processing batch item {i+1}: {e}")
                processing_stats['failed'] += 1
                reports.append(f"Image {i+1}: Failed - {str(e)}")

                # Keep batch shape consistent with an empty result
                results.append(np.zeros((height, width, 4), dtype=np.uint8))
                masks.append(np.zeros((height, width), dtype=np.uint8))

        processing_stats['avg_processing_time'] = total_processing_time / batch_size if batch_size > 0 else 0.0

        result_tensor = torch.from_numpy(np.array(results)).float() / 255.0
        mask_tensor = torch.from_numpy(np.array(masks)).float() / 255.0

        summary_report = self._generate_summary_report(processing_stats, reports)
        return (result_tensor, mask_tensor, summary_report)

    def _generate_summary_report(self, stats, detailed_reports):
        """Generate a summary report of batch processing results."""
        lines = [
            "=== Chroma Key Batch Report ===",
            f"Total Images: {stats['total_images']}",
            f"Successful: {stats['successful']}",
            f"Failed: {stats['failed']}",
            f"Success Rate: {(stats['successful']/stats['total_images']*100):.1f}%" if stats['total_images'] > 0 else "N/A",
            f"Average Processing Time: {stats['avg_processing_time']:.3f}s per image",
            ""
        ]

        if stats['background_colors']:
            lines.append(f"Background Colors: {', '.join(stats['background_colors'])}")
            lines.append("")

        if detailed_reports:
            lines.append("Detailed Processing Log:")
            lines.extend(detailed_reports)

        return "\n".join(lines)


# Node registration
NODE_CLASS_MAPPINGS = {
    "ChromaKeyBackgroundRemover": ChromaKeyBackgroundRemover,
    "ChromaKeyBackgroundRemoverBatch": ChromaKeyBackgroundRemoverBatch,
}

NODE_DISPLAY_NAME_MAPPINGS = {
    "ChromaKeyBackgroundRemover": "Chroma Key Background Remover",
    "ChromaKeyBackgroundRemoverBatch": "Chroma Key Background Remover (Batch)",
}
